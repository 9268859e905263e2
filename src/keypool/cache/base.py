"""Abstract base class for the ephemeral cache tier."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable


@dataclass
class CacheEntry:
    """
    A cached value with its expiry metadata.

    Attributes:
        key: Cache key
        value: Cached data (JSON-serializable)
        created_at: When the entry was created
        ttl_seconds: Time-to-live in seconds (None = no expiry)
        clock: Source of the current UTC time used for expiry
    """

    key: str
    value: Any
    created_at: datetime = field(default_factory=datetime.utcnow)
    ttl_seconds: float | None = None
    clock: Callable[[], datetime] = field(default=datetime.utcnow, repr=False, compare=False)

    @property
    def expires_at(self) -> datetime | None:
        """Get expiration time, or None if no TTL."""
        if self.ttl_seconds is None:
            return None
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    @property
    def is_expired(self) -> bool:
        """Check if entry has expired."""
        if self.expires_at is None:
            return False
        return self.clock() >= self.expires_at

    @property
    def ttl_remaining(self) -> float | None:
        """Get remaining TTL in seconds, or None if no expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - self.clock()).total_seconds())


class CacheBackend(ABC):
    """
    Abstract base class for cache backends.

    Entries expire lazily: an expired entry is dropped the next time it
    is read, no background sweeper is required.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'memory', 'redis')."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """
        Get a value from the cache.

        Args:
            key: Cache key

        Returns:
            Cached value, or None if not found/expired
        """
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
    ) -> bool:
        """
        Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON-serializable)
            ttl_seconds: Time-to-live in seconds (None = use default)

        Returns:
            True if successful, False otherwise
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """True if the key exists and has not expired."""
        ...

    @abstractmethod
    async def clear(self, pattern: str | None = None) -> int:
        """
        Clear cache entries.

        Args:
            pattern: Optional glob pattern (e.g., "exhausted:tenant-1:*")
                    None = clear all entries

        Returns:
            Number of entries cleared
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
