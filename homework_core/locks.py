"""
Блокировки по ключу — один писатель на ключ
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Hashable


class KeyedLocks:
    """
    asyncio.Lock на каждый ключ. Разные ключи не конкурируют,
    неиспользуемые блокировки удаляются.
    """

    def __init__(self):
        self._locks: dict = {}
        self._waiters: dict = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
