"""
In-process keyed locks.

One asyncio.Lock per key, created on first use and dropped once nobody
holds or waits on it. Only coordinates tasks inside a single process.
"""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """Map of locks keyed by user ID, connection ID, etc."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: dict[Hashable, int] = {}

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Acquire the lock for `key`, waiting if another task holds it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_nowait(self, key: Hashable) -> AsyncIterator[bool]:
        """
        Acquire the lock only if it is free.

        Yields True when acquired, False when another task holds it. The
        check and the acquire happen without a suspension point in between.
        """
        if self.locked(key):
            yield False
            return
        async with self.hold(key):
            yield True
