from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    """One asyncio.Lock per name; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        self._refs[name] = self._refs.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[name] -= 1
            if self._refs[name] == 0:
                del self._refs[name]
                del self._locks[name]

    def __len__(self) -> int:
        return len(self._locks)
