"""Per-key asyncio locks (one scope per order id / provider reference)."""

import asyncio
import weakref
from contextlib import asynccontextmanager


class KeyedLocks:
    """
    Lock registry keyed by entity id.

    Locks are held weakly, so an entry disappears once no coroutine is
    waiting on or holding it.
    """

    def __init__(self, timeout_seconds: float = 30.0):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._mutex = asyncio.Lock()
        self.timeout_seconds = timeout_seconds

    async def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create lock for key"""
        async with self._mutex:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    @asynccontextmanager
    async def hold(self, key: str):
        lock = await self._get_lock(key)
        await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
        try:
            yield lock
        finally:
            lock.release()

    def __len__(self) -> int:
        return len(self._locks)
