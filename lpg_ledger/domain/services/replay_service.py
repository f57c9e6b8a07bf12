"""
Replay Service - rebuilds a customer's running balance and due counts from
the ordered transaction history, seeded and verified by balance checkpoints.

A checkpoint stores the running balance right after one transaction. Any
balance strictly before a transaction can then be computed from the latest
earlier checkpoint plus the short tail of history that follows it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lpg_ledger.core.config import settings
from lpg_ledger.core.exceptions import ReplayInconsistencyError
from lpg_ledger.core.logging import get_logger
from lpg_ledger.db.models.balance_checkpoint import BalanceCheckpoint
from lpg_ledger.db.models.transaction import LedgerTransaction
from lpg_ledger.domain.ledger.balance import (
    ZERO,
    BalanceRow,
    ReplayDeadline,
    final_balance,
    running_balances,
)
from lpg_ledger.domain.ledger.dues import DueUpdate, recompute_from_history

logger = get_logger(__name__)

# (created_at, id) of a transaction: the total order of a customer's ledger
OrderKey = tuple[datetime, int]


def _before(created_at_col, id_col, key: OrderKey):
    created_at, row_id = key
    return or_(created_at_col < created_at, and_(created_at_col == created_at, id_col < row_id))


def _after(created_at_col, id_col, key: OrderKey):
    created_at, row_id = key
    return or_(created_at_col > created_at, and_(created_at_col == created_at, id_col > row_id))


def _at_or_after(created_at_col, id_col, key: OrderKey):
    created_at, row_id = key
    return or_(created_at_col > created_at, and_(created_at_col == created_at, id_col >= row_id))


@dataclass
class ReplayResult:
    """Outcome of folding a customer's complete history"""
    rows: list[BalanceRow]
    dues: DueUpdate
    checkpoints_verified: int = 0

    @property
    def running_balance(self) -> Decimal:
        return final_balance(self.rows)


class ReplayService:
    """History replay and checkpoint bookkeeping for one database session"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.checkpoint_interval = settings.LEDGER_CHECKPOINT_INTERVAL
        self.tolerance = Decimal(str(settings.LEDGER_BALANCE_TOLERANCE))

    def deadline(self, customer_id: int) -> ReplayDeadline:
        return ReplayDeadline(settings.LEDGER_REPLAY_TIMEOUT_SECONDS, customer_id)

    async def history(
        self,
        customer_id: int,
        after: Optional[OrderKey] = None,
        before: Optional[OrderKey] = None,
    ) -> list[LedgerTransaction]:
        """Transactions of a customer ordered by (created_at, id), bounds exclusive"""
        query = select(LedgerTransaction).where(LedgerTransaction.customer_id == customer_id)
        if after is not None:
            query = query.where(_after(LedgerTransaction.created_at, LedgerTransaction.id, after))
        if before is not None:
            query = query.where(_before(LedgerTransaction.created_at, LedgerTransaction.id, before))
        result = await self.db.execute(
            query.order_by(LedgerTransaction.created_at, LedgerTransaction.id)
        )
        return list(result.scalars().all())

    async def latest_checkpoint(
        self,
        customer_id: int,
        before: Optional[OrderKey] = None,
    ) -> Optional[BalanceCheckpoint]:
        """Newest checkpoint taken strictly before ``before`` (or overall)"""
        query = select(BalanceCheckpoint).where(BalanceCheckpoint.customer_id == customer_id)
        if before is not None:
            query = query.where(
                _before(BalanceCheckpoint.as_of_created_at, BalanceCheckpoint.transaction_id, before)
            )
        result = await self.db.execute(
            query.order_by(
                BalanceCheckpoint.as_of_created_at.desc(),
                BalanceCheckpoint.transaction_id.desc(),
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def balance_before(
        self,
        customer_id: int,
        key: OrderKey,
        deadline: Optional[ReplayDeadline] = None,
    ) -> Decimal:
        """Running balance of the last transaction strictly preceding ``key``"""
        checkpoint = await self.latest_checkpoint(customer_id, before=key)
        if checkpoint is None:
            seed, after = ZERO, None
        else:
            seed = Decimal(checkpoint.running_balance)
            after = (checkpoint.as_of_created_at, checkpoint.transaction_id)

        tail = await self.history(customer_id, after=after, before=key)
        rows = running_balances(tail, seed, deadline or self.deadline(customer_id))
        logger.debug(
            "Computed balance before transaction",
            extra_data={
                "customer_id": customer_id,
                "checkpoint_transaction_id": checkpoint.transaction_id if checkpoint else None,
                "tail_length": len(tail),
            },
        )
        return final_balance(rows, seed)

    async def replay(self, customer_id: int, verify: bool = True) -> ReplayResult:
        """Fold the customer's whole history; optionally check stored checkpoints"""
        deadline = self.deadline(customer_id)
        history = await self.history(customer_id)
        rows = running_balances(history, ZERO, deadline)
        dues = recompute_from_history(history, deadline)
        result = ReplayResult(rows=rows, dues=dues)
        if verify:
            result.checkpoints_verified = await self.verify_checkpoints(customer_id, rows)
        return result

    async def checkpoints(self, customer_id: int) -> list[BalanceCheckpoint]:
        result = await self.db.execute(
            select(BalanceCheckpoint)
            .where(BalanceCheckpoint.customer_id == customer_id)
            .order_by(BalanceCheckpoint.as_of_created_at, BalanceCheckpoint.transaction_id)
        )
        return list(result.scalars().all())

    async def verify_checkpoints(self, customer_id: int, rows: list[BalanceRow]) -> int:
        """Compare every stored checkpoint with the replayed balance at its transaction.

        Raises ReplayInconsistencyError on the first divergence beyond tolerance.
        """
        replayed = {row.transaction.id: row.running_balance for row in rows}
        verified = 0
        for checkpoint in await self.checkpoints(customer_id):
            stored = Decimal(checkpoint.running_balance)
            balance = replayed.get(checkpoint.transaction_id)
            if balance is None or abs(balance - stored) > self.tolerance:
                logger.error(
                    "Checkpoint diverges from replayed balance",
                    extra_data={
                        "customer_id": customer_id,
                        "transaction_id": checkpoint.transaction_id,
                        "stored_balance": str(stored),
                        "replayed_balance": str(balance),
                    },
                )
                raise ReplayInconsistencyError(
                    customer_id, checkpoint.transaction_id, stored, balance
                )
            verified += 1
        return verified

    async def invalidate_checkpoints(self, customer_id: int, from_key: Optional[OrderKey] = None) -> None:
        """Drop checkpoints at or after ``from_key`` (all of them when None)"""
        statement = delete(BalanceCheckpoint).where(BalanceCheckpoint.customer_id == customer_id)
        if from_key is not None:
            statement = statement.where(
                _at_or_after(BalanceCheckpoint.as_of_created_at, BalanceCheckpoint.transaction_id, from_key)
            )
        result = await self.db.execute(statement.execution_options(synchronize_session="fetch"))
        logger.info(
            "Balance checkpoints invalidated",
            extra_data={"customer_id": customer_id, "removed": result.rowcount},
        )

    def is_checkpoint_position(self, position: int) -> bool:
        return position > 0 and position % self.checkpoint_interval == 0

    def add_checkpoint(self, customer_id: int, row: BalanceRow, position: int) -> BalanceCheckpoint:
        transaction = row.transaction
        checkpoint = BalanceCheckpoint(
            customer_id=customer_id,
            transaction_id=transaction.id,
            position=position,
            as_of_created_at=transaction.created_at,
            running_balance=row.running_balance,
        )
        self.db.add(checkpoint)
        return checkpoint

    async def write_checkpoints(
        self,
        customer_id: int,
        rows: list[BalanceRow],
        from_key: Optional[OrderKey] = None,
    ) -> int:
        """Create the missing checkpoints for a replayed history at or after ``from_key``"""
        existing = {checkpoint.transaction_id for checkpoint in await self.checkpoints(customer_id)}
        written = 0
        for position, row in enumerate(rows, start=1):
            if not self.is_checkpoint_position(position):
                continue
            if from_key is not None and row.transaction.order_key < from_key:
                continue
            if row.transaction.id in existing:
                continue
            self.add_checkpoint(customer_id, row, position)
            written += 1
        return written
