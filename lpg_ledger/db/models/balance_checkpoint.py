"""
Balance Checkpoint Model - periodic running-balance snapshots

A checkpoint records the running balance right after a given transaction so
that a replay can start from it instead of from the customer's first posting.
Checkpoints are never corrected in place: a divergence found during a replay
is reported, and undo drops the checkpoints it invalidates before rebuilding.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, Numeric, DateTime, ForeignKey, Index, UniqueConstraint

from lpg_ledger.db.database import Base


class BalanceCheckpoint(Base):
    """Running balance of a customer after ``position`` folded transactions"""

    __tablename__ = "balance_checkpoints"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("ledger_transactions.id"), nullable=False)

    position = Column(Integer, nullable=False)
    as_of_created_at = Column(DateTime, nullable=False)
    running_balance = Column(Numeric(14, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("customer_id", "transaction_id", name="uq_checkpoint_customer_tx"),
        Index("ix_checkpoint_customer_as_of", "customer_id", "as_of_created_at", "transaction_id"),
    )
