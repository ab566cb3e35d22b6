"""Read-through key-value cache with a per-key TTL."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


USER_TTL_SECONDS = 30.0
QUESTION_POOL_TTL_SECONDS = 3600.0
LEADERBOARD_TTL_SECONDS = 60.0


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


QUESTION_POOL_KEY = "questions:pool"
LEADERBOARD_PREFIX = "leaderboard:"


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ReadThroughCache:
    """
    In-process read-through cache.

    Values are loaded on miss and kept until their TTL expires or the key is
    invalidated. Callers must stay correct with the cache empty; it only
    bounds staleness to the stated TTL.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, _Entry] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: float,
    ) -> Any:
        """Return the cached value for ``key``, loading and caching it on miss."""
        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        async with self._lock:
            cached = self.get(key)
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1
            value = await loader()
            self.set(key, value, ttl_seconds)
            logger.debug("Cache load %s (ttl=%.0fs)", key, ttl_seconds)
            return value

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
