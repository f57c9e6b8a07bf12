"""
Base interface for inventory executors.

The ledger only decides which cylinder/product transitions a posting or an
undo implies. An executor performs them and reports success or failure per
transition; the ledger aborts the whole operation on any failure.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from lpg_ledger.domain.ledger.inventory import InventoryTransition, TransitionResult


class BaseInventoryExecutor(ABC):
    """
    Executors run inside the caller's database transaction: whatever they
    write is committed or rolled back together with the ledger rows.
    """

    @abstractmethod
    async def execute(self, transitions: list[InventoryTransition]) -> list[TransitionResult]:
        """
        Perform the transitions in order.

        Args:
            transitions: changes planned by the ledger for one transaction.

        Returns:
            One result per transition, in the same order. A failed transition
            is reported, never raised.
        """

    @property
    @abstractmethod
    def executor_name(self) -> str:
        """Short name used in logs"""
