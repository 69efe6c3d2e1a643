"""Per-key asyncio locks

One lock per resource or transaction id, so unrelated tenants never queue
behind each other. Locks are dropped once nobody holds or awaits them.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLock:
    """Mutex keyed by an arbitrary string"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def resource_key(resource_id) -> str:
    return f"resource:{resource_id}"


def transaction_key(transaction_id) -> str:
    return f"pending-transaction:{transaction_id}"


def reservation_key(reservation_id) -> str:
    return f"reservation:{reservation_id}"
