"""
Ledger Transaction Model - immutable posting history

A row is written once by posting. The only permitted change afterwards is
the one-way POSTED -> VOIDED transition performed by undo.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Boolean,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from lpg_ledger.db.database import Base


class TransactionType(str, enum.Enum):
    SALE = "SALE"
    PAYMENT = "PAYMENT"
    BUYBACK = "BUYBACK"
    RETURN_EMPTY = "RETURN_EMPTY"
    ADJUSTMENT = "ADJUSTMENT"
    CREDIT_NOTE = "CREDIT_NOTE"


class PaymentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    FULLY_PAID = "FULLY_PAID"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"
    ONLINE = "ONLINE"


class TransactionStatus(str, enum.Enum):
    POSTED = "POSTED"
    VOIDED = "VOIDED"


class LedgerTransaction(Base):
    """A posted customer transaction with its line items"""

    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    bill_sno = Column(Integer, nullable=False)

    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    business_date = Column(DateTime, nullable=False)
    # Insertion time; the running balance is ordered by this, never by business_date
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    total_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=True)
    unpaid_amount = Column(Numeric(12, 2), nullable=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=True)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=True)
    payment_reference = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)

    voided = Column(Boolean, nullable=False, default=False)
    voided_by = Column(String(100), nullable=True)
    voided_at = Column(DateTime, nullable=True)
    void_reason = Column(String(500), nullable=True)

    items = relationship(
        "TransactionItem",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionItem.position",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("customer_id", "bill_sno", name="uq_customer_bill_sno"),
        Index("ix_ledger_tx_customer_created", "customer_id", "created_at", "id"),
        Index("ix_ledger_tx_customer_business_date", "customer_id", "business_date"),
    )

    @property
    def status(self) -> TransactionStatus:
        return TransactionStatus.VOIDED if self.voided else TransactionStatus.POSTED

    @property
    def order_key(self) -> tuple:
        """Total order used by every balance fold"""
        return (self.created_at, self.id)
