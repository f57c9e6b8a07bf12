"""
Transaction API Routes - posting and undo
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from lpg_ledger.api.routes.schemas import WarningResponse, get_ledger_service
from lpg_ledger.db.models.transaction import TransactionType
from lpg_ledger.domain.ledger.schemas import PaymentInfo, TransactionItemIn
from lpg_ledger.domain.services.ledger_service import LedgerService

router = APIRouter()


class PostTransactionRequest(BaseModel):
    customer_id: int
    transaction_type: TransactionType
    items: List[TransactionItemIn] = []
    payment_info: Optional[PaymentInfo] = None
    created_by: Optional[str] = None


class PostTransactionResponse(BaseModel):
    transaction_id: int
    bill_sno: int
    transaction_type: str
    total_amount: float
    payment_status: Optional[str] = None
    balance_impact: float
    new_running_balance: float
    display_balance: float
    balance_status: str
    due_counts: Dict[str, int]
    warnings: List[WarningResponse]


class UndoRequest(BaseModel):
    reason: Optional[str] = None
    voided_by: Optional[str] = None


class UndoResponse(BaseModel):
    transaction_id: int
    reversed_balance_impact: float
    new_running_balance: float
    updated_due_counts: Dict[str, int]
    void_reason: str
    warnings: List[WarningResponse]


@router.post(
    "",
    response_model=PostTransactionResponse,
    status_code=201,
    summary="Post a transaction",
    description=(
        "Classifies the items, updates the running balance and cylinder dues "
        "and runs inventory transitions in one atomic commit. Over-returns are "
        "clamped and reported in `warnings`."
    ),
)
async def post_transaction(
    data: PostTransactionRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    return await service.post_transaction(
        data.customer_id,
        data.transaction_type,
        items=data.items,
        payment_info=data.payment_info,
        created_by=data.created_by,
    )


@router.post(
    "/{transaction_id}/undo",
    response_model=UndoResponse,
    summary="Void a posted transaction",
)
async def undo_transaction(
    transaction_id: int,
    data: Optional[UndoRequest] = Body(None),
    service: LedgerService = Depends(get_ledger_service)
):
    data = data or UndoRequest()
    return await service.undo_transaction(
        transaction_id,
        reason=data.reason,
        voided_by=data.voided_by,
    )
