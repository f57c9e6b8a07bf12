"""
Executor that accepts every transition without touching storage.

Used when physical inventory lives in another system that is reconciled
separately.
"""
from __future__ import annotations

from lpg_ledger.core.logging import get_logger
from lpg_ledger.domain.ledger.inventory import InventoryTransition, TransitionResult
from lpg_ledger.domain.services.inventory.base_executor import BaseInventoryExecutor

logger = get_logger(__name__)


class NoopInventoryExecutor(BaseInventoryExecutor):

    @property
    def executor_name(self) -> str:
        return "noop"

    async def execute(self, transitions: list[InventoryTransition]) -> list[TransitionResult]:
        if transitions:
            logger.debug(
                "Inventory transitions accepted without execution",
                extra_data={"transitions": [t.to_dict() for t in transitions]},
            )
        return [TransitionResult(transition=t, success=True) for t in transitions]
