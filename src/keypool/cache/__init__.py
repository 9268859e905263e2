"""
Ephemeral cache tier.

Short-lived, self-expiring state in front of the durable store: the
exhaustion fast-path set and the aggregated quota snapshot cache.
"""

from keypool.cache.base import CacheBackend, CacheEntry
from keypool.cache.memory import InMemoryCache
from keypool.cache.redis import RedisCache
from keypool.cache.factory import create_cache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "InMemoryCache",
    "RedisCache",
    "create_cache",
]
