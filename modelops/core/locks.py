"""Per-entity asyncio locks used to serialize read-modify-write cycles."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Hand out one ``asyncio.Lock`` per key.

    Writers touching the same model, pipeline or experiment queue behind each
    other while writers for different keys proceed concurrently.
    """

    def __init__(self) -> None:
        """Initialize the instance."""
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        """Return the lock for ``key``, creating it on first use."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Acquire the lock for ``key`` for the duration of the block."""
        async with self.get(key):
            yield

    def discard(self, key: str) -> None:
        """Forget the lock for a deleted entity if nobody holds it."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
