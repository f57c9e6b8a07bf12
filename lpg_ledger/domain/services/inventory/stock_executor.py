"""
Stock Executor - keeps cylinder and accessory counts in the ledger database.

Cylinders are counted per (type, status); accessories per product name.
Returned cylinders the books never saw leave the customer are still accepted:
they are added to the empty stock, and the result reports how many units were
actually taken from WITH_CUSTOMER so undo can put back exactly that many.
Everything else requires enough units in the source state.
"""
from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lpg_ledger.core.logging import get_logger
from lpg_ledger.db.models.stock import AccessoryStock, CylinderStatus, CylinderStock
from lpg_ledger.domain.ledger.inventory import InventoryTransition, StockState, TransitionResult
from lpg_ledger.domain.services.inventory.base_executor import BaseInventoryExecutor

logger = get_logger(__name__)


class StockInventoryExecutor(BaseInventoryExecutor):

    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def executor_name(self) -> str:
        return "stock"

    async def execute(self, transitions: list[InventoryTransition]) -> list[TransitionResult]:
        results = []
        for transition in transitions:
            if transition.cylinder_type:
                result = await self._move_cylinders(transition)
            else:
                result = await self._move_accessory(transition)
            if not result.success:
                logger.warning(
                    "Inventory transition failed",
                    extra_data=result.to_dict(),
                )
            results.append(result)
        return results

    async def _get_cylinder_row(self, cylinder_type: str, state: StockState) -> Optional[CylinderStock]:
        result = await self.db.execute(
            select(CylinderStock)
            .where(CylinderStock.cylinder_type == cylinder_type)
            .where(CylinderStock.status == CylinderStatus(state.value))
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _get_or_create_cylinder_row(self, cylinder_type: str, state: StockState) -> CylinderStock:
        row = await self._get_cylinder_row(cylinder_type, state)
        if row is None:
            row = CylinderStock(cylinder_type=cylinder_type, status=CylinderStatus(state.value), count=0)
            self.db.add(row)
            await self.db.flush()
        return row

    async def _move_cylinders(self, transition: InventoryTransition) -> TransitionResult:
        source = await self._get_cylinder_row(transition.cylinder_type, transition.from_state)
        available = source.count if source else 0

        lenient = (
            transition.from_state == StockState.WITH_CUSTOMER
            and transition.to_state == StockState.EMPTY
        )
        if available < transition.quantity and not lenient:
            return TransitionResult(
                transition=transition,
                success=False,
                reason=(
                    f"Only {available} {transition.cylinder_type} cylinders "
                    f"{transition.from_state.value}, {transition.quantity} requested"
                ),
            )

        taken = min(available, transition.quantity)
        if source is not None:
            source.count = available - taken
        target = await self._get_or_create_cylinder_row(transition.cylinder_type, transition.to_state)
        target.count += transition.delivered
        return TransitionResult(transition=transition, success=True, taken=taken)

    async def _move_accessory(self, transition: InventoryTransition) -> TransitionResult:
        result = await self.db.execute(
            select(AccessoryStock)
            .where(AccessoryStock.product_name == transition.product_name)
            .with_for_update()
        )
        row = result.scalar_one_or_none()

        if transition.to_state == StockState.SOLD:
            available = row.count if row else 0
            if available < transition.quantity:
                return TransitionResult(
                    transition=transition,
                    success=False,
                    reason=f"Only {available} {transition.product_name} in stock, {transition.quantity} requested",
                )
            row.count = available - transition.quantity
            return TransitionResult(transition=transition, success=True, taken=transition.quantity)

        # back on the shelf
        if row is None:
            row = AccessoryStock(product_name=transition.product_name, count=0)
            self.db.add(row)
        row.count += transition.delivered
        return TransitionResult(transition=transition, success=True, taken=transition.quantity)
