"""
Per-customer serialization of ledger mutations.

Posting and undo replay a customer's full history, so two mutations on the
same customer must never interleave. Inside one process this registry hands
out one asyncio.Lock per customer; across processes the services also take
a row lock (SELECT ... FOR UPDATE) on the customer and rely on the optimistic
version column.
"""
import asyncio
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator

from lpg_ledger.core.logging import get_logger, bind_customer, unbind_customer

logger = get_logger(__name__)


class CustomerLock:
    """Registry of asyncio locks keyed by customer id.

    An entry lives while at least one coroutine holds or waits for it.
    """

    _instances: dict[int, "CustomerLock"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, customer_id: int):
        self.customer_id = customer_id
        self._lock = asyncio.Lock()
        self._users = 0
        self._log_token = None

    @classmethod
    def checkout(cls, customer_id: int) -> "CustomerLock":
        """Get or create the lock for a customer and count the caller as a user"""
        with cls._instances_lock:
            lock = cls._instances.get(customer_id)
            if lock is None:
                lock = cls._instances[customer_id] = cls(customer_id)
            lock._users += 1
        return lock

    def checkin(self) -> None:
        """Release the caller's claim, dropping the entry once nobody uses it"""
        with self._instances_lock:
            self._users -= 1
            if self._users == 0 and self._instances.get(self.customer_id) is self:
                del self._instances[self.customer_id]

    @classmethod
    def reset_all(cls) -> None:
        """Drop all locks (for testing)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "CustomerLock":
        if self._lock.locked():
            logger.debug(
                "Waiting for customer ledger lock",
                extra_data={"customer_id": self.customer_id}
            )
        await self._lock.acquire()
        self._log_token = bind_customer(self.customer_id)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        unbind_customer(self._log_token)
        self._log_token = None
        self._lock.release()


@asynccontextmanager
async def customer_lock(customer_id: int) -> AsyncIterator[CustomerLock]:
    """Serialize a block of work on one customer's ledger"""
    lock = CustomerLock.checkout(customer_id)
    try:
        async with lock:
            yield lock
    finally:
        lock.checkin()
