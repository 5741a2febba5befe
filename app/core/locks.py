"""Per-key async locks for serializing writes to the same record.

Used by the reconciler so two webhook deliveries for the same provider
subscription never interleave inside one process. Cross-process ordering is
handled by the database (row locks and unique constraints).

Note: This is an in-memory implementation. Entries are reference-counted and
dropped as soon as no task holds or waits on them.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    """Registry of asyncio locks keyed by an arbitrary string."""

    def __init__(self) -> None:
        # Map of key -> (lock, number of holders + waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for `key` for the duration of the block."""
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)

        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def locked(self, key: str) -> bool:
        """True if some task currently holds the lock for `key`."""
        entry = self._locks.get(key)
        return bool(entry and entry[0].locked())

    def __len__(self) -> int:
        return len(self._locks)


# Singleton instance for application-wide use
subscription_locks = KeyedLock()
