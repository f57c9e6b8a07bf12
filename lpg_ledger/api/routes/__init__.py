"""
API Routes
"""
from fastapi import APIRouter

from lpg_ledger.api.routes.customers import router as customers_router
from lpg_ledger.api.routes.transactions import router as transactions_router

router = APIRouter()

router.include_router(customers_router, prefix="/customers", tags=["Customers"])
router.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
