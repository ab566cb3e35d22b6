"""Per-key asyncio locks used as the per-user serialization point."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLocks:
    """
    One ``asyncio.Lock`` per key, created on first use.

    Serializes read-modify-write sequences on a user's balance within one
    event loop. Cross-process deployments need a store-level compare-and-set
    instead.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks[key]
        async with lock:
            yield

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
