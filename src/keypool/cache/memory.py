"""In-memory cache backend implementation."""

import asyncio
import fnmatch
import logging
from datetime import datetime
from typing import Any, Callable

from keypool.cache.base import CacheBackend, CacheEntry

logger = logging.getLogger(__name__)


class InMemoryCache(CacheBackend):
    """
    Process-local TTL map guarded by an asyncio lock.

    Holds the exhaustion fast-path set and the quota snapshot cache for
    single-instance deployments. Not shared across processes and lost on
    restart, which only costs a few extra durable-store reads.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 600,
        max_size: int | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """
        Initialize in-memory cache.

        Args:
            default_ttl_seconds: Default TTL for cache entries
            max_size: Maximum number of entries (None = unlimited)
            clock: Source of the current UTC time for creation and expiry
        """
        self._store: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _live_entry(self, key: str) -> CacheEntry | None:
        """Return the entry for key, dropping it if expired (caller holds lock)."""
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired:
            del self._store[key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
    ) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl

        async with self._lock:
            if self._max_size and key not in self._store and len(self._store) >= self._max_size:
                self._evict_oldest()

            self._store[key] = CacheEntry(
                key=key,
                value=value,
                created_at=self._clock(),
                ttl_seconds=ttl,
                clock=self._clock,
            )
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._store.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def clear(self, pattern: str | None = None) -> int:
        async with self._lock:
            if pattern is None:
                count = len(self._store)
                self._store.clear()
                return count

            keys_to_delete = [k for k in self._store if fnmatch.fnmatch(k, pattern)]
            for key in keys_to_delete:
                del self._store[key]
            return len(keys_to_delete)

    async def close(self) -> None:
        self._connected = False
        self._store.clear()

    def _evict_oldest(self) -> None:
        """Evict the oldest entry (caller holds lock)."""
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k].created_at)
        del self._store[oldest_key]
        logger.debug(f"Evicted cache entry {oldest_key}")

    async def health_check(self) -> dict[str, Any]:
        async with self._lock:
            total_entries = len(self._store)
            expired_entries = sum(1 for v in self._store.values() if v.is_expired)

        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_entries": total_entries,
            "expired_entries": expired_entries,
            "max_size": self._max_size,
        }

    def size(self) -> int:
        """Current number of stored entries, expired ones included."""
        return len(self._store)
