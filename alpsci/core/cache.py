"""Process-local read-through cache with per-call TTL and prefix invalidation."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

log = structlog.get_logger("alpsci.cache")

T = TypeVar("T")


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl_seconds: float


class ReadThroughCache:
    """Key/value cache that calls a loader on miss and stores its result.

    An entry is fresh while ``now - stored_at < ttl``. Concurrent misses on
    the same key share one loader call. Loader exceptions propagate and
    nothing is stored. Storage is per process; there is no cross-instance
    invalidation.

    Entries past the TTL they were stored with are swept on every store,
    and a key's lock lives only while some caller is loading or waiting.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def pending_keys(self) -> int:
        """Keys with a load in flight or callers waiting on one."""
        return len(self._locks)

    def _fresh(self, key: str, ttl_minutes: float) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._clock() - entry.stored_at
        if age < ttl_minutes * 60:
            return entry
        if age >= entry.ttl_seconds:
            del self._entries[key]
        return None

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= e.ttl_seconds]
        for key in expired:
            del self._entries[key]
        if expired:
            log.debug("cache.evicted", removed=len(expired))

    def _acquire_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return lock

    def _release_lock(self, key: str) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
        else:
            del self._lock_users[key]
            del self._locks[key]

    async def get(
        self,
        key: str,
        ttl_minutes: float,
        loader: Callable[[], Awaitable[T]],
    ) -> T:
        """Return the cached value for *key*, loading it when absent or expired."""
        entry = self._fresh(key, ttl_minutes)
        if entry is not None:
            return entry.value

        lock = self._acquire_lock(key)
        try:
            async with lock:
                # another caller may have loaded it while we waited
                entry = self._fresh(key, ttl_minutes)
                if entry is not None:
                    return entry.value

                value = await loader()
                now = self._clock()
                self._evict_expired(now)
                self._entries[key] = CacheEntry(
                    value=value, stored_at=now, ttl_seconds=ttl_minutes * 60
                )
                log.debug("cache.stored", key=key)
                return value
        finally:
            self._release_lock(key)

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose key starts with *prefix*; return the count."""
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            log.debug("cache.invalidated", prefix=prefix, removed=len(doomed))
        return len(doomed)

    def invalidate_all(self) -> None:
        self._entries.clear()
