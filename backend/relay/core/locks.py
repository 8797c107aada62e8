import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, List


class KeyedLocks:
    """
    One asyncio.Lock per key, created on first use and dropped again once
    nobody holds or waits for it, so the map only holds keys in use.
    """

    def __init__(self):
        # key -> [lock, holders + waiters]
        self._entries: Dict[Hashable, List] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]
