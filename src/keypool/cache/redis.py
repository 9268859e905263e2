"""Redis cache backend implementation."""

import json
import logging
from datetime import datetime
from typing import Any

import redis.asyncio as redis

from keypool.cache.base import CacheBackend

logger = logging.getLogger(__name__)


class RedisCache(CacheBackend):
    """
    Redis cache backend for multi-instance deployments.

    Lets every process serving the same tenants see an exhaustion the
    moment one of them records it. Expiry is delegated to Redis TTLs.
    Connection and command errors are logged and reported as misses, so
    an unreachable Redis degrades to durable-store reads.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        default_ttl_seconds: float = 600,
        prefix: str = "keypool:",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
    ) -> None:
        """
        Initialize Redis cache.

        Args:
            url: Redis connection URL
            default_ttl_seconds: Default TTL for cache entries
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
        """
        self._url = url
        self._default_ttl = default_ttl_seconds
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._client: Any = None
        self._connected = False

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps({
            "v": value,
            "t": datetime.utcnow().isoformat(),
        })

    def _deserialize(self, data: str | bytes | None) -> Any | None:
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data).get("v")
        except (json.JSONDecodeError, TypeError, AttributeError):
            return None

    async def connect(self) -> bool:
        """
        Connect to Redis.

        Returns:
            True if connected successfully
        """
        if self._connected and self._client:
            return True

        try:
            self._client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
                decode_responses=False,
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self._url}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            return False

    async def _ensure_connected(self) -> bool:
        if not self._connected:
            return await self.connect()
        return True

    async def get(self, key: str) -> Any | None:
        if not await self._ensure_connected():
            return None

        try:
            data = await self._client.get(self._get_key(key))
            return self._deserialize(data)
        except Exception as e:
            logger.error(f"Redis GET error for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
    ) -> bool:
        if not await self._ensure_connected():
            return False

        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl

        try:
            serialized = self._serialize(value)
            if ttl and ttl > 0:
                await self._client.set(self._get_key(key), serialized, px=int(ttl * 1000))
            else:
                await self._client.set(self._get_key(key), serialized)
            return True
        except Exception as e:
            logger.error(f"Redis SET error for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        if not await self._ensure_connected():
            return False

        try:
            return await self._client.delete(self._get_key(key)) > 0
        except Exception as e:
            logger.error(f"Redis DELETE error for {key}: {e}")
            return False

    async def exists(self, key: str) -> bool:
        if not await self._ensure_connected():
            return False

        try:
            return await self._client.exists(self._get_key(key)) > 0
        except Exception as e:
            logger.error(f"Redis EXISTS error for {key}: {e}")
            return False

    async def clear(self, pattern: str | None = None) -> int:
        if not await self._ensure_connected():
            return 0

        search_pattern = f"{self._prefix}{pattern or '*'}"
        try:
            # SCAN rather than KEYS so large keyspaces don't block the server
            keys = [key async for key in self._client.scan_iter(match=search_pattern)]
            if keys:
                await self._client.delete(*keys)
            return len(keys)
        except Exception as e:
            logger.error(f"Redis CLEAR error: {e}")
            return 0

    async def close(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._connected = False
