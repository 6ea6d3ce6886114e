"""
Per-record asyncio locks.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, AsyncIterator


class KeyedLock:
    """One asyncio.Lock per key, created on demand and dropped when idle.

    Operations on different keys never contend; operations on the same key
    are mutually exclusive.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

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
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
