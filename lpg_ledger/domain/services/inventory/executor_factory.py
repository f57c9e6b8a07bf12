"""
Executor Factory - picks the inventory executor configured in settings.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from lpg_ledger.core.config import settings
from lpg_ledger.domain.services.inventory.base_executor import BaseInventoryExecutor


def get_inventory_executor(db: AsyncSession, executor_type: str | None = None) -> BaseInventoryExecutor:
    """Executor bound to the caller's session so it shares its transaction"""
    executor_type = executor_type or settings.INVENTORY_EXECUTOR

    if executor_type == "noop":
        from lpg_ledger.domain.services.inventory.noop_executor import NoopInventoryExecutor

        return NoopInventoryExecutor()

    if executor_type == "stock":
        from lpg_ledger.domain.services.inventory.stock_executor import StockInventoryExecutor

        return StockInventoryExecutor(db)

    raise ValueError(f"Unknown inventory executor: {executor_type}")
