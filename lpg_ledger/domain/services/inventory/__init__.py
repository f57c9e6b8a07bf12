"""
Inventory executors
"""
from lpg_ledger.domain.services.inventory.base_executor import BaseInventoryExecutor
from lpg_ledger.domain.services.inventory.noop_executor import NoopInventoryExecutor
from lpg_ledger.domain.services.inventory.stock_executor import StockInventoryExecutor
from lpg_ledger.domain.services.inventory.executor_factory import get_inventory_executor

__all__ = [
    "BaseInventoryExecutor",
    "NoopInventoryExecutor",
    "StockInventoryExecutor",
    "get_inventory_executor",
]
