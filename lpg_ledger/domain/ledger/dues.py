"""
Cylinder Due Tracker - outstanding cylinders per type for one customer.

Sale items raise the due count of their cylinder type, buyback and return
items lower it. Counts never go below zero: an over-return is clamped and
reported as an OverReturnWarning, it does not reject the transaction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from lpg_ledger.core.logging import get_logger
from lpg_ledger.db.models.transaction import TransactionType
from lpg_ledger.domain.ledger.balance import ReplayDeadline
from lpg_ledger.domain.ledger.classifier import ClassifiedItems, classify_persisted

logger = get_logger(__name__)

# Money-only transactions never move cylinders
_NO_DUE_EFFECT = {
    TransactionType.PAYMENT,
    TransactionType.ADJUSTMENT,
    TransactionType.CREDIT_NOTE,
}


@dataclass(frozen=True)
class OverReturnWarning:
    """More cylinders came back than were due; the count was clamped to 0"""
    cylinder_type: str
    due_before: int
    returned: int
    transaction_id: Optional[int] = None

    @property
    def excess(self) -> int:
        return self.returned - self.due_before

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": "OVER_RETURN",
            "cylinder_type": self.cylinder_type,
            "due_before": self.due_before,
            "returned": self.returned,
            "excess": self.excess,
            "transaction_id": self.transaction_id,
            "message": (
                f"{self.returned} {self.cylinder_type} returned but only "
                f"{self.due_before} due; due count clamped to 0"
            ),
        }


@dataclass
class DueUpdate:
    counts: dict[str, int]
    warnings: list[OverReturnWarning] = field(default_factory=list)


def _increment(counts: dict[str, int], cylinder_type: str, quantity: int) -> None:
    counts[cylinder_type] = counts.get(cylinder_type, 0) + quantity


def _decrement(
    counts: dict[str, int],
    cylinder_type: str,
    quantity: int,
    warnings: list[OverReturnWarning],
    transaction_id: Optional[int],
    log_warnings: bool = True,
) -> None:
    due_before = counts.get(cylinder_type, 0)
    if quantity > due_before:
        warning = OverReturnWarning(
            cylinder_type=cylinder_type,
            due_before=due_before,
            returned=quantity,
            transaction_id=transaction_id,
        )
        warnings.append(warning)
        if log_warnings:
            logger.warning("Over-return clamped to zero", extra_data=warning.to_dict())
    counts[cylinder_type] = max(0, due_before - quantity)


def _apply(
    due_counts: Mapping[str, int],
    transaction: Any,
    classified: ClassifiedItems,
    reverse: bool,
    log_warnings: bool = True,
) -> DueUpdate:
    counts = dict(due_counts)
    warnings: list[OverReturnWarning] = []

    if getattr(transaction, "voided", False) or transaction.transaction_type in _NO_DUE_EFFECT:
        return DueUpdate(counts=counts, warnings=warnings)

    tx_id = getattr(transaction, "id", None)
    delivered = [item for item in classified.sale if item.cylinder_type]
    returned = [item for item in classified.buyback + classified.returns if item.cylinder_type]

    if reverse:
        delivered, returned = returned, delivered

    for item in delivered:
        _increment(counts, item.cylinder_type, item.quantity)
    for item in returned:
        _decrement(counts, item.cylinder_type, item.quantity, warnings, tx_id, log_warnings)

    return DueUpdate(counts=counts, warnings=warnings)


def apply_delta(
    due_counts: Mapping[str, int],
    transaction: Any,
    classified: ClassifiedItems,
) -> DueUpdate:
    """Due counts after ``transaction`` is applied"""
    return _apply(due_counts, transaction, classified, reverse=False)


def reverse_delta(
    due_counts: Mapping[str, int],
    transaction: Any,
    classified: ClassifiedItems,
) -> DueUpdate:
    """Due counts after ``transaction`` is taken back out (roles swapped)"""
    return _apply(due_counts, transaction, classified, reverse=True, log_warnings=False)


def recompute_from_history(
    transactions: Iterable[Any],
    deadline: Optional[ReplayDeadline] = None,
) -> DueUpdate:
    """Rebuild due counts from scratch by applying every transaction in order.

    Same result as incremental application over the same ordered history.
    """
    counts: dict[str, int] = {}
    warnings: list[OverReturnWarning] = []
    for index, transaction in enumerate(transactions):
        if deadline is not None and index % 256 == 0:
            deadline.check(index)
        # historical clamps were already reported when they were posted
        update = _apply(
            counts, transaction, classify_persisted(transaction.items), reverse=False, log_warnings=False
        )
        counts = update.counts
        warnings.extend(update.warnings)
    return DueUpdate(counts=counts, warnings=warnings)


def touched_types(classified: ClassifiedItems) -> set[str]:
    return {
        item.cylinder_type
        for item in classified.sale + classified.buyback + classified.returns
        if item.cylinder_type
    }
