"""Quota-aware credential and model pool for rate-limited inference providers."""

from keypool.errors import ActivationError, CredentialNotFoundError, KeyPoolError
from keypool.pool import PoolManager
from keypool.selector import QuotaSnapshot, Selection

__version__ = "0.1.0"

__all__ = [
    "ActivationError",
    "CredentialNotFoundError",
    "KeyPoolError",
    "PoolManager",
    "QuotaSnapshot",
    "Selection",
]
