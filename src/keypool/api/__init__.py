"""Monitoring API for the credential pool."""

from keypool.api.app import create_app
from keypool.api.routes import get_pool_manager, router, set_pool_manager

__all__ = ["create_app", "get_pool_manager", "router", "set_pool_manager"]
