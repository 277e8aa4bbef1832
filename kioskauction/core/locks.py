"""
Per-key asyncio locks
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    """
    Serializes work per key, e.g., all operations on the same auction record run one at a time,
    while operations on different records may run concurrently.

    Locks are created lazily and released from the table once nobody holds or awaits them.
    """

    def __init__(self):
        self.__locks: dict[Hashable, asyncio.Lock] = {}
        self.__waiters: dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self.__locks.setdefault(key, asyncio.Lock())
        self.__waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self.__waiters[key] -= 1
            if self.__waiters[key] == 0:
                del self.__waiters[key]
                del self.__locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self.__locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self.__locks)
