"""
Customer API Routes - ledger views of a B2B customer
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator

from lpg_ledger.api.routes.schemas import (
    LedgerResponse,
    ReconciliationResponse,
    get_ledger_service,
    parse_date_param,
)
from lpg_ledger.domain.ledger.balance import balance_status, to_display_balance
from lpg_ledger.domain.ledger.classifier import cylinder_display_name
from lpg_ledger.domain.services.ledger_service import LedgerService

router = APIRouter()


class CustomerCreate(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v


class CustomerResponse(BaseModel):
    id: int
    name: str
    ledger_balance: float
    display_balance: float
    balance_status: str
    created_at: datetime


class CylinderDueItem(BaseModel):
    cylinder_type: str
    display_name: str
    count: int


class CylinderDuesResponse(BaseModel):
    customer_id: int
    due_counts: Dict[str, int]
    items: List[CylinderDueItem]


@router.post(
    "",
    response_model=CustomerResponse,
    status_code=201,
    summary="Create a customer",
)
async def create_customer(
    data: CustomerCreate,
    service: LedgerService = Depends(get_ledger_service)
):
    customer = await service.create_customer(data.name)
    balance = Decimal(customer.ledger_balance or 0)
    display = to_display_balance(balance)
    return CustomerResponse(
        id=customer.id,
        name=customer.name,
        ledger_balance=balance,
        display_balance=display,
        balance_status=balance_status(display),
        created_at=customer.created_at,
    )


@router.get(
    "/{customer_id}/ledger",
    response_model=LedgerResponse,
    summary="Customer ledger with running balances",
    description=(
        "Transactions in a business-date window, newest first. Balances are "
        "computed before pagination and continue from the history preceding "
        "the window."
    ),
)
async def get_ledger(
    customer_id: int,
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive (whole day)"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    service: LedgerService = Depends(get_ledger_service)
):
    return await service.get_ledger(
        customer_id,
        start_date=parse_date_param(start_date, "start_date"),
        end_date=parse_date_param(end_date, "end_date"),
        page=page,
        limit=limit,
    )


@router.get(
    "/{customer_id}/cylinder-dues",
    response_model=CylinderDuesResponse,
    summary="Outstanding cylinders per type",
)
async def get_cylinder_dues(
    customer_id: int,
    service: LedgerService = Depends(get_ledger_service)
):
    due_counts = await service.get_cylinder_dues(customer_id)
    return CylinderDuesResponse(
        customer_id=customer_id,
        due_counts=due_counts,
        items=[
            CylinderDueItem(
                cylinder_type=cylinder_type,
                display_name=cylinder_display_name(cylinder_type),
                count=count,
            )
            for cylinder_type, count in sorted(due_counts.items())
        ],
    )


@router.get(
    "/{customer_id}/reconciliation",
    response_model=ReconciliationResponse,
    summary="Compare cached balances with a full replay",
)
async def get_reconciliation(
    customer_id: int,
    as_of: Optional[str] = Query(None, description="YYYY-MM-DD, business date cutoff"),
    service: LedgerService = Depends(get_ledger_service)
):
    return await service.reconcile(customer_id, as_of=parse_date_param(as_of, "as_of"))
