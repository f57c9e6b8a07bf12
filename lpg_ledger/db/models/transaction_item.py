"""
Transaction Item Model - one line of a ledger transaction
"""
import enum
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from lpg_ledger.db.database import Base


class ItemKind(str, enum.Enum):
    """Financial bucket of a line item, assigned once when the item is posted"""
    SALE = "SALE"
    BUYBACK = "BUYBACK"
    RETURN = "RETURN"


class TransactionItem(Base):
    """Line item: a cylinder delivery, a cylinder return/buyback or an accessory"""

    __tablename__ = "transaction_items"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("ledger_transactions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    item_kind = Column(SQLEnum(ItemKind), nullable=True)

    cylinder_type = Column(String(50), nullable=True)
    product_name = Column(String(200), nullable=True)
    quantity = Column(Integer, nullable=False)
    # Returned units the stock never saw leave (WITH_CUSTOMER was short at post time)
    untracked_quantity = Column(Integer, nullable=False, default=0)

    price_per_item = Column(Numeric(12, 2), nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)

    # Buyback data; buyback_rate == 0 is meaningful and distinct from NULL
    remaining_kg = Column(Numeric(8, 2), nullable=True)
    buyback_rate = Column(Numeric(6, 4), nullable=True)
    buyback_total = Column(Numeric(12, 2), nullable=True)

    transaction = relationship("LedgerTransaction", back_populates="items")
