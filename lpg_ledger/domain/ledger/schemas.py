"""
Input models for posting transactions
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator

from lpg_ledger.db.models.transaction import PaymentMethod


class TransactionItemIn(BaseModel):
    """One line of a transaction as submitted by a client.

    ``buyback_rate`` set to 0 is a buyback at 0%, leaving it out means the
    item is not a buyback.
    """
    cylinder_type: Optional[str] = None
    product_name: Optional[str] = None
    quantity: int
    price_per_item: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    remaining_kg: Optional[Decimal] = None
    buyback_rate: Optional[Decimal] = None
    buyback_total: Optional[Decimal] = None

    @field_validator("cylinder_type", "product_name")
    @classmethod
    def strip_names(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None

    @field_validator("cylinder_type")
    @classmethod
    def normalize_cylinder_type(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class PaymentInfo(BaseModel):
    """Money side of a posting.

    ``amount`` is the transaction total for PAYMENT, ADJUSTMENT and
    CREDIT_NOTE; for item-based types it overrides the total computed from
    the items. ``paid_amount`` is what a customer paid at sale time.
    """
    amount: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    business_date: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("paid_amount")
    @classmethod
    def validate_paid_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("paid_amount cannot be negative")
        return v
