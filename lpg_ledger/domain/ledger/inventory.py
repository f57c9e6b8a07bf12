"""
Inventory transition planning.

The ledger decides which physical changes a posting implies; an inventory
executor carries them out. Undo asks for the exact inverse of what posting
asked for, in reverse order.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Any, Optional

from lpg_ledger.db.models.transaction import TransactionType
from lpg_ledger.domain.ledger.classifier import ClassifiedItems


class StockState(str, enum.Enum):
    FULL = "FULL"
    EMPTY = "EMPTY"
    WITH_CUSTOMER = "WITH_CUSTOMER"
    IN_STOCK = "IN_STOCK"  # accessory on the shelf
    SOLD = "SOLD"  # accessory handed to a customer


@dataclass(frozen=True)
class InventoryTransition:
    """Move ``quantity`` units of one cylinder type / product between states.

    ``target_quantity`` is set when the target receives a different count than
    the source gives up (returns of cylinders the stock never saw leave).
    """
    quantity: int
    from_state: StockState
    to_state: StockState
    cylinder_type: Optional[str] = None
    product_name: Optional[str] = None
    item_position: Optional[int] = None
    target_quantity: Optional[int] = None

    @property
    def delivered(self) -> int:
        return self.quantity if self.target_quantity is None else self.target_quantity

    @property
    def label(self) -> str:
        return self.cylinder_type or self.product_name or "unknown item"

    def inverse(self) -> "InventoryTransition":
        return replace(
            self,
            from_state=self.to_state,
            to_state=self.from_state,
            quantity=self.delivered,
            target_quantity=None if self.target_quantity is None else self.quantity,
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "item": self.label,
            "quantity": self.quantity,
            "from": self.from_state.value,
            "to": self.to_state.value,
            "item_position": self.item_position,
        }
        if self.target_quantity is not None:
            data["delivered"] = self.target_quantity
        return data


@dataclass(frozen=True)
class TransitionResult:
    transition: InventoryTransition
    success: bool
    reason: Optional[str] = None
    # units actually taken from the source, when the executor tracks stock
    taken: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data = self.transition.to_dict()
        data["success"] = self.success
        if self.reason:
            data["reason"] = self.reason
        return data


_MONEY_ONLY = {
    TransactionType.PAYMENT,
    TransactionType.ADJUSTMENT,
    TransactionType.CREDIT_NOTE,
}


def plan_transitions(transaction_type: TransactionType, classified: ClassifiedItems) -> list[InventoryTransition]:
    """Physical changes implied by posting a transaction"""
    if transaction_type in _MONEY_ONLY:
        return []

    transitions: list[InventoryTransition] = []
    for item in classified.sale:
        if item.quantity <= 0:
            continue
        position = getattr(item, "position", None)
        if item.cylinder_type:
            transitions.append(InventoryTransition(
                quantity=item.quantity,
                from_state=StockState.FULL,
                to_state=StockState.WITH_CUSTOMER,
                cylinder_type=item.cylinder_type,
                item_position=position,
            ))
        elif item.product_name:
            transitions.append(InventoryTransition(
                quantity=item.quantity,
                from_state=StockState.IN_STOCK,
                to_state=StockState.SOLD,
                product_name=item.product_name,
                item_position=position,
            ))

    for item in classified.buyback + classified.returns:
        if item.quantity <= 0 or not item.cylinder_type:
            continue
        untracked = getattr(item, "untracked_quantity", None) or 0
        transitions.append(InventoryTransition(
            quantity=item.quantity - untracked,
            from_state=StockState.WITH_CUSTOMER,
            to_state=StockState.EMPTY,
            cylinder_type=item.cylinder_type,
            item_position=getattr(item, "position", None),
            target_quantity=item.quantity if untracked else None,
        ))
    return transitions


def plan_reversal(transaction_type: TransactionType, classified: ClassifiedItems) -> list[InventoryTransition]:
    """Inverse of ``plan_transitions``, last change undone first"""
    return [t.inverse() for t in reversed(plan_transitions(transaction_type, classified))]


def failures(results: list[TransitionResult]) -> list[dict[str, Any]]:
    return [result.to_dict() for result in results if not result.success]
