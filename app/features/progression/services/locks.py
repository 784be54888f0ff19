"""
Per-connection serialization.

In-process half of a connection step: coroutines of one engine queue here
before opening the repository transaction, whose row lock does the same
across processes. Locks for different connections are independent.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ConnectionLockRegistry:
    def __init__(self):
        # Entries disappear once no coroutine holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, connection_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(f"connection:{connection_id}")
        async with lock:
            yield

    @asynccontextmanager
    async def hold_pair(self, user_a: str, user_b: str) -> AsyncIterator[None]:
        """Serialize connection requests between the same two users."""
        first, second = sorted((user_a, user_b))
        lock = self._lock_for(f"pair:{first}|{second}")
        async with lock:
            yield
