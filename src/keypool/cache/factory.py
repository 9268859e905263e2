"""Cache factory for creating the ephemeral tier from configuration."""

import logging
from datetime import datetime
from typing import Any

from keypool.cache.base import CacheBackend
from keypool.cache.memory import InMemoryCache
from keypool.cache.redis import RedisCache
from keypool.config import settings

logger = logging.getLogger(__name__)


def create_cache(
    backend: str | None = None,
    **kwargs: Any,
) -> CacheBackend:
    """
    Create a cache backend instance.

    Args:
        backend: Backend type ("memory" or "redis"), defaults to config
        **kwargs: Additional arguments passed to the backend

    Returns:
        CacheBackend instance

    Raises:
        ValueError: If backend type is unknown
    """
    backend_type = backend or settings.cache_backend
    ttl = kwargs.get("ttl_seconds", settings.exhaustion_cache_ttl_seconds)

    if backend_type == "memory":
        return InMemoryCache(
            default_ttl_seconds=ttl,
            max_size=kwargs.get("max_size"),
            clock=kwargs.get("clock") or datetime.utcnow,
        )

    elif backend_type == "redis":
        url = kwargs.get("url", settings.redis_url)
        if not url:
            logger.warning(
                "Redis URL not configured, falling back to in-memory cache. "
                "Set REDIS_URL to share exhaustion state across instances."
            )
            return InMemoryCache(default_ttl_seconds=ttl, clock=kwargs.get("clock") or datetime.utcnow)

        return RedisCache(
            url=url,
            default_ttl_seconds=ttl,
            prefix=kwargs.get("prefix", settings.redis_prefix),
            max_connections=kwargs.get("max_connections", 10),
        )

    else:
        raise ValueError(f"Unknown cache backend: {backend_type}")
