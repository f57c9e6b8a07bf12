"""
Balance Calculator - signed balance impact per transaction and the running
balance fold over a customer's history.

Sign convention: a positive running balance means the customer owes money.
Every surface that shows a balance to a person goes through
``to_display_balance`` which negates it (positive shown value = credit).
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from lpg_ledger.core.exceptions import ReplayTimeoutError
from lpg_ledger.core.logging import get_logger
from lpg_ledger.db.models.transaction import PaymentStatus, TransactionType

logger = get_logger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

_CREDIT_TYPES = {
    TransactionType.PAYMENT,
    TransactionType.BUYBACK,
    TransactionType.ADJUSTMENT,
    TransactionType.CREDIT_NOTE,
}

# Deadline checks are cheap but not free; fold this many rows between checks
_DEADLINE_CHECK_EVERY = 256


def safe_decimal(value: Any, *, field: str = "amount", transaction_id: Any = None) -> Decimal:
    """Parse a stored amount; unreadable values count as zero and are logged.

    Used on read paths so that one corrupt record does not take the whole
    ledger view down.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        if value.is_finite():
            return value
    else:
        try:
            parsed = Decimal(str(value))
            if parsed.is_finite():
                return parsed
        except (InvalidOperation, ValueError, TypeError):
            pass
    logger.warning(
        "Unparseable ledger amount treated as zero",
        extra_data={"field": field, "transaction_id": transaction_id, "raw_value": repr(value)},
    )
    return ZERO


def balance_impact(transaction: Any) -> Decimal:
    """Signed change this transaction makes to the customer's running balance"""
    if getattr(transaction, "voided", False):
        return ZERO

    tx_id = getattr(transaction, "id", None)
    tx_type = transaction.transaction_type
    total = safe_decimal(transaction.total_amount, field="total_amount", transaction_id=tx_id)

    if tx_type == TransactionType.SALE:
        if transaction.payment_status == PaymentStatus.FULLY_PAID:
            return ZERO
        if transaction.unpaid_amount is not None:
            return safe_decimal(transaction.unpaid_amount, field="unpaid_amount", transaction_id=tx_id)
        return total
    if tx_type in _CREDIT_TYPES:
        return -total
    return ZERO


@dataclass(frozen=True)
class BalanceRow:
    """One step of the fold: a transaction with its impact and the balance after it"""
    transaction: Any
    impact: Decimal
    running_balance: Decimal

    @property
    def display_balance(self) -> Decimal:
        return to_display_balance(self.running_balance)


class ReplayDeadline:
    """Time budget for one replay; raises ReplayTimeoutError once exceeded"""

    def __init__(self, timeout_seconds: float, customer_id: int | None = None):
        self.timeout_seconds = timeout_seconds
        self.customer_id = customer_id
        self._expires_at = time.monotonic() + timeout_seconds

    def check(self, folded: int) -> None:
        if time.monotonic() > self._expires_at:
            logger.error(
                "Ledger replay exceeded its time budget",
                extra_data={
                    "customer_id": self.customer_id,
                    "timeout_seconds": self.timeout_seconds,
                    "transactions_folded": folded,
                },
            )
            raise ReplayTimeoutError(self.customer_id, self.timeout_seconds, folded)


def running_balances(
    history: Iterable[Any],
    starting_balance: Decimal = ZERO,
    deadline: Optional[ReplayDeadline] = None,
) -> list[BalanceRow]:
    """Fold ``history`` (already ordered by created_at, id) into running balances.

    rb(n) = rb(n-1) + impact(n), seeded with ``starting_balance``.
    """
    rows: list[BalanceRow] = []
    balance = starting_balance
    for index, transaction in enumerate(history):
        if deadline is not None and index % _DEADLINE_CHECK_EVERY == 0:
            deadline.check(index)
        impact = balance_impact(transaction)
        balance = balance + impact
        rows.append(BalanceRow(transaction=transaction, impact=impact, running_balance=balance))
    return rows


def final_balance(rows: list[BalanceRow], starting_balance: Decimal = ZERO) -> Decimal:
    return rows[-1].running_balance if rows else starting_balance


def to_display_balance(running_balance: Decimal) -> Decimal:
    """Customer-facing balance: positive means the customer has credit"""
    return ZERO - running_balance


def balance_status(display_balance: Decimal) -> str:
    if display_balance < ZERO:
        return "Customer owes this amount"
    if display_balance > ZERO:
        return "Customer has credit"
    return "Balance settled"


@dataclass(frozen=True)
class SaleSettlement:
    """Paid/unpaid split of a sale computed at posting time"""
    paid_amount: Decimal
    unpaid_amount: Decimal
    payment_status: PaymentStatus


def settle_sale(
    total_amount: Decimal,
    paid_amount: Decimal = ZERO,
    buyback_credit: Decimal = ZERO,
    tolerance: Decimal = CENT,
) -> SaleSettlement:
    """Work out how much of a sale stays on the customer's account.

    Buyback credit given inside the same sale is netted against the total
    before the cash payment.
    """
    net = total_amount - buyback_credit
    unpaid = max(ZERO, net - paid_amount)
    if unpaid <= tolerance:
        status = PaymentStatus.FULLY_PAID
        unpaid = ZERO
    elif paid_amount + buyback_credit <= ZERO:
        status = PaymentStatus.UNPAID
    else:
        status = PaymentStatus.PARTIAL
    return SaleSettlement(paid_amount=paid_amount, unpaid_amount=unpaid, payment_status=status)


@dataclass(frozen=True)
class WindowSummary:
    starting_balance: Decimal
    ending_balance: Decimal
    total_in: Decimal
    total_out: Decimal
    transaction_count: int

    @property
    def net_balance(self) -> Decimal:
        """Change of the running balance across the window (total_out - total_in)"""
        return self.ending_balance - self.starting_balance

    @property
    def display_balance(self) -> Decimal:
        return to_display_balance(self.ending_balance)

    @property
    def balance_status(self) -> str:
        return balance_status(self.display_balance)


def summarize(rows: list[BalanceRow], starting_balance: Decimal) -> WindowSummary:
    """Totals over a balanced window.

    Out = impacts that raise what the customer owes, In = impacts that lower it.
    """
    total_out = sum((row.impact for row in rows if row.impact > ZERO), ZERO)
    total_in = sum((-row.impact for row in rows if row.impact < ZERO), ZERO)
    return WindowSummary(
        starting_balance=starting_balance,
        ending_balance=final_balance(rows, starting_balance),
        total_in=total_in,
        total_out=total_out,
        transaction_count=len(rows),
    )
