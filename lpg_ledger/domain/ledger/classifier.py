"""
Item Classifier - buckets transaction line items into Sale / Buyback / Return.

The rule order is load-bearing: it is what resolves items that carry more than
one kind of data (e.g. a priced cylinder with a buyback rate).

1. buyback_rate explicitly set (even 0)           -> BUYBACK
2. price_per_item > 0                              -> SALE
3. cylinder, no price, no rate, no remaining_kg   -> RETURN (plain empty return)
4. no cylinder_type (accessory, incl. free items)  -> SALE
5. any other cylinder item                         -> RETURN

Items are read by attribute, so ORM rows and request schemas are accepted alike.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Sequence

from lpg_ledger.core.exceptions import ValidationException
from lpg_ledger.db.models.transaction_item import ItemKind

# Matches transaction_items.cylinder_type
MAX_CYLINDER_TYPE_LENGTH = 50
WEIGHT_RE = re.compile(r"(\d+)(?:_(\d+))?KG$")

_FRIENDLY_CYLINDER_NAMES = {
    "DOMESTIC_11_8KG": "Domestic (11.8kg)",
    "STANDARD_15KG": "Standard (15kg)",
    "COMMERCIAL_45_4KG": "Commercial (45.4kg)",
}


@dataclass
class ClassifiedItems:
    """Items of one transaction split by financial bucket, input order preserved"""
    sale: list[Any] = field(default_factory=list)
    buyback: list[Any] = field(default_factory=list)
    returns: list[Any] = field(default_factory=list)

    def bucket(self, kind: ItemKind) -> list[Any]:
        return {
            ItemKind.SALE: self.sale,
            ItemKind.BUYBACK: self.buyback,
            ItemKind.RETURN: self.returns,
        }[kind]

    def as_dict(self) -> dict[str, list[Any]]:
        return {"sale": self.sale, "buyback": self.buyback, "return": self.returns}


def _positive(value: Any) -> bool:
    if value is None:
        return False
    try:
        return Decimal(str(value)) > 0
    except InvalidOperation:
        return False


def validate_items(items: Iterable[Any]) -> None:
    """Reject malformed items before anything is classified or written"""
    for index, item in enumerate(items):
        quantity = getattr(item, "quantity", None)
        if quantity is None:
            raise ValidationException(
                "Item quantity is required",
                field=f"items[{index}].quantity",
            )
        if quantity < 0:
            raise ValidationException(
                f"Item quantity cannot be negative: {quantity}",
                field=f"items[{index}].quantity",
                details={"quantity": quantity},
            )
        cylinder_type = getattr(item, "cylinder_type", None)
        if cylinder_type and len(cylinder_type) > MAX_CYLINDER_TYPE_LENGTH:
            raise ValidationException(
                f"Cylinder type longer than {MAX_CYLINDER_TYPE_LENGTH} characters",
                field=f"items[{index}].cylinder_type",
                details={"length": len(cylinder_type)},
            )


def classify_item(item: Any) -> ItemKind:
    """Assign the financial bucket of a single item"""
    has_rate = getattr(item, "buyback_rate", None) is not None
    has_price = _positive(getattr(item, "price_per_item", None))
    cylinder_type = getattr(item, "cylinder_type", None)

    if has_rate:
        return ItemKind.BUYBACK
    if has_price:
        return ItemKind.SALE
    if cylinder_type and not _positive(getattr(item, "remaining_kg", None)):
        return ItemKind.RETURN
    if not cylinder_type:
        return ItemKind.SALE
    return ItemKind.RETURN


def classify(items: Sequence[Any]) -> ClassifiedItems:
    """Split items into sale/buyback/return buckets.

    Raises ValidationException for malformed items.
    """
    validate_items(items)
    classified = ClassifiedItems()
    for item in items:
        classified.bucket(classify_item(item)).append(item)
    return classified


def classify_persisted(items: Sequence[Any]) -> ClassifiedItems:
    """Bucket already-posted items by their stored ``item_kind``.

    Legacy rows without a tag fall back to the rules above.
    """
    classified = ClassifiedItems()
    for item in items:
        kind = getattr(item, "item_kind", None) or classify_item(item)
        classified.bucket(ItemKind(kind)).append(item)
    return classified


def kind_badges(classified: ClassifiedItems, fallback_type: str) -> list[str]:
    """Badges shown for a transaction (SALE / BUYBACK / RETURN)"""
    badges = []
    if any(_positive(getattr(item, "price_per_item", None)) for item in classified.sale):
        badges.append("SALE")
    if classified.buyback:
        badges.append("BUYBACK")
    if classified.returns:
        badges.append("RETURN")
    return badges or [fallback_type]


def cylinder_display_name(cylinder_type: str | None) -> str:
    if not cylinder_type:
        return "N/A"
    if cylinder_type in _FRIENDLY_CYLINDER_NAMES:
        return _FRIENDLY_CYLINDER_NAMES[cylinder_type]
    match = WEIGHT_RE.search(cylinder_type)
    if match:
        whole, fraction = match.groups()
        weight = f"{whole}.{fraction}" if fraction else whole
        return f"Cylinder ({weight}kg)"
    return cylinder_type.replace("_", " ").title()
