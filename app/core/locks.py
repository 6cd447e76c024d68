"""Per-key asyncio locks.

Operations on the same tenant or phone number run one at a time inside this
process; different keys proceed in parallel. Cross-process ordering is left
to row locks and unique constraints in the database.
"""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

from app.core.logging import get_logger

logger = get_logger(__name__)


class KeyedLocks:
    """Registry of asyncio locks keyed by tuples like ``("balance", 5)``."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle locks so the registry does not grow with every number seen
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every service in the process
keyed_locks = KeyedLocks()


def balance_key(tenant_id: int) -> tuple[str, int]:
    return ("balance", tenant_id)


def number_key(number: str) -> tuple[str, str]:
    return ("number", number)
