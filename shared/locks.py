"""In-process keyed mutex.

One asyncio.Lock per key (a session, or a domain/intent pair), created on
first use and dropped once no coroutine holds or awaits it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Hashable


class KeyedMutex:
    """Serializes work per key within this worker."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncGenerator[None, None]:
        """Hold the lock for ``key``.

        Usage:
            async with mutex.acquire(session_id):
                ...
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
