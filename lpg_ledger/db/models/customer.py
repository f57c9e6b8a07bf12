"""
Customer Model - B2B account holder with derived ledger caches
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from lpg_ledger.db.database import Base


class Customer(Base):
    """B2B customer.

    ``ledger_balance`` and the ``cylinder_dues`` rows are caches: both can be
    rebuilt at any time by replaying the customer's transaction history.
    ``version`` is bumped on every write and checked by SQLAlchemy on flush.
    """

    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)

    ledger_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    cylinder_dues = relationship(
        "CustomerCylinderDue",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def due_counts(self) -> dict[str, int]:
        return {due.cylinder_type: due.count for due in self.cylinder_dues}


class CustomerCylinderDue(Base):
    """Outstanding cylinders of one type held by a customer"""

    __tablename__ = "customer_cylinder_dues"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    cylinder_type = Column(String(50), nullable=False)
    count = Column(Integer, nullable=False, default=0)

    customer = relationship("Customer", back_populates="cylinder_dues")

    __table_args__ = (
        UniqueConstraint("customer_id", "cylinder_type", name="uq_customer_cylinder_type"),
    )
