"""Read-through TTL cache for externally controlled configuration.

Never used for balances: those are always read through the ledger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    key: str
    value: Any
    fetched_at: float


class TTLCache:
    """Keyed cache with a fixed TTL and single-flight loading per key."""

    def __init__(
        self,
        ttl_seconds: float = 300,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._logger = logger or logging.getLogger("rewards.cache")
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Bumped by invalidation; a load that straddles a bump is not stored
        self._generations: dict[str, int] = {}
        self._epoch = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def _generation(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def _bump(self, key: str) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    def _fresh(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.fetched_at < self._ttl:
            return entry
        return None

    async def get_with_cache(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key`` or load, store and return it.

        A loader exception propagates and leaves the cache untouched.
        """
        entry = self._fresh(key)
        if entry is not None:
            return entry.value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another waiter may have loaded it while we queued on the lock
            entry = self._fresh(key)
            if entry is not None:
                return entry.value
            generation = self._generation(key)
            value = await loader()
            if self._generation(key) != generation:
                self._logger.debug("Cache load for %s invalidated mid-flight, not stored", key)
                return value
            self._entries[key] = CacheEntry(key=key, value=value, fetched_at=self._clock())
            self._logger.debug("Cache refreshed: %s", key)
            return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, fetched_at=self._clock())

    def invalidate(self, key: str) -> bool:
        """Drop one key. Returns True if it was cached."""
        self._bump(key)
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        for k in {*self._locks, *self._entries}:
            if k.startswith(prefix):
                self._bump(k)
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        self._epoch += 1
        self._entries.clear()

    def sweep_expired(self) -> int:
        """Remove expired entries (called periodically by the scheduler)."""
        now = self._clock()
        stale = [k for k, e in self._entries.items() if now - e.fetched_at >= self._ttl]
        for k in stale:
            del self._entries[k]
            lock = self._locks.get(k)
            if lock is not None and not lock.locked():
                del self._locks[k]
        return len(stale)
