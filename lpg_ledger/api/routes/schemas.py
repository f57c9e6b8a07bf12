"""
Shared response schemas and helpers for the ledger API
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from lpg_ledger.core.exceptions import ValidationException
from lpg_ledger.db.database import get_db
from lpg_ledger.domain.services.ledger_service import LedgerService


def get_ledger_service(db: AsyncSession = Depends(get_db)) -> LedgerService:
    return LedgerService(db)


def parse_date_param(value: Optional[str], param_name: str) -> Optional[date]:
    """Parse a YYYY-MM-DD query parameter; a bad format is a 400"""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationException(
            f"Invalid date format for {param_name}, expected YYYY-MM-DD",
            field=param_name,
            details={"value": value},
        )


class WarningResponse(BaseModel):
    code: str
    cylinder_type: str
    due_before: int
    returned: int
    excess: int
    transaction_id: Optional[int] = None
    message: str


class TransactionItemResponse(BaseModel):
    position: int
    item_kind: str
    cylinder_type: Optional[str] = None
    display_name: Optional[str] = None
    product_name: Optional[str] = None
    quantity: int
    price_per_item: Optional[float] = None
    total_price: Optional[float] = None
    remaining_kg: Optional[float] = None
    buyback_rate: Optional[float] = None
    buyback_total: Optional[float] = None


class LedgerEntryResponse(BaseModel):
    id: int
    bill_sno: int
    transaction_type: str
    status: str
    business_date: datetime
    created_at: datetime
    total_amount: float
    paid_amount: Optional[float] = None
    unpaid_amount: Optional[float] = None
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    voided: bool
    voided_by: Optional[str] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    badges: List[str]
    balance_impact: float
    running_balance: float
    display_balance: float
    items: List[TransactionItemResponse]


class LedgerSummary(BaseModel):
    starting_balance: float
    ending_balance: float
    net_balance: float
    total_in: float
    total_out: float
    display_balance: float
    balance_status: str
    transaction_count: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class LedgerResponse(BaseModel):
    customer_id: int
    summary: LedgerSummary
    transactions: List[LedgerEntryResponse]
    pagination: Pagination


class ReconciliationResponse(BaseModel):
    customer_id: int
    customer_name: str
    as_of: Optional[datetime] = None
    calculated_balance: float
    system_balance: float
    difference: float
    is_balanced: bool
    display_balance: float
    balance_status: str
    totals_by_type: Dict[str, float]
    transaction_count: int
    due_counts: Dict[str, int]
    replayed_due_counts: Dict[str, int]
    due_counts_match: bool
    checkpoints_verified: bool
    inconsistency: Optional[Dict[str, Any]] = None
