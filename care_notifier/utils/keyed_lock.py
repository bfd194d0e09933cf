"""Per-key asyncio locks used to serialize work on one task id."""
from contextlib import AsyncExitStack, asynccontextmanager
import asyncio
from typing import AsyncIterator, Dict, Iterable


class KeyedLock:
    """
    Hands out one asyncio.Lock per key.

    Locks are reference counted and dropped once nobody holds or waits on
    them, so the registry does not grow with every task id ever seen.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
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
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Acquire several keys in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key))
            yield
