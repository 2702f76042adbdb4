"""Per-experiment mutual exclusion for mutating operations."""

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ExperimentLocks:
    """
    Registry of asyncio locks keyed by experiment id.

    Operations on different experiments never wait for each other. A lock
    lives only while some coroutine holds or awaits it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, experiment_id: int) -> asyncio.Lock:
        """Get (or create) the lock of one experiment."""
        lock = self._locks.get(experiment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[experiment_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, experiment_id: int) -> AsyncIterator[None]:
        """Context manager serializing work on one experiment."""
        lock = self.get(experiment_id)
        async with lock:
            yield

    def is_locked(self, experiment_id: int) -> bool:
        lock = self._locks.get(experiment_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
