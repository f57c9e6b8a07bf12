"""
Stock Models - counts used by the bundled stock inventory executor
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Enum as SQLEnum

from lpg_ledger.db.database import Base


class CylinderStatus(str, enum.Enum):
    FULL = "FULL"
    EMPTY = "EMPTY"
    WITH_CUSTOMER = "WITH_CUSTOMER"


class CylinderStock(Base):
    """Number of cylinders of a type in a given status"""

    __tablename__ = "cylinder_stock"

    id = Column(Integer, primary_key=True, index=True)
    cylinder_type = Column(String(50), nullable=False)
    status = Column(SQLEnum(CylinderStatus), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("cylinder_type", "status", name="uq_cylinder_stock_type_status"),
    )


class AccessoryStock(Base):
    """Stock of a non-cylinder product (regulators, pipes, stoves...)"""

    __tablename__ = "accessory_stock"

    id = Column(Integer, primary_key=True, index=True)
    product_name = Column(String(200), nullable=False, unique=True)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
