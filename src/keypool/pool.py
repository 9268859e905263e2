"""
In-process entry point for callers of the credential pool.

A caller asks for a pair with ``select``, makes exactly one provider
call with the returned handle, then reports the outcome with exactly one
of ``report_success`` or ``report_exhausted``.
"""

import logging
from datetime import datetime
from typing import Callable

from keypool.activation import ActivationManager
from keypool.cache.base import CacheBackend
from keypool.cache.factory import create_cache
from keypool.cache.memory import InMemoryCache
from keypool.catalog import ModelCatalog, default_catalog
from keypool.config import Settings, get_settings
from keypool.db.manager import DatabaseManager
from keypool.db.models import ExclusionEntry
from keypool.db.repository import CredentialRepository
from keypool.exclusions import RPD_EXHAUSTED, ExclusionRegistry
from keypool.health import GeminiHealthChecker, HealthChecker
from keypool.quota.tracker import QuotaTracker
from keypool.rotation import RoundRobinRotator
from keypool.selector import PoolSelector, QuotaSnapshot, Selection

logger = logging.getLogger(__name__)


class PoolManager:
    """
    Facade wiring the tracker, registry, rotator, activation and selector.

    Every time-dependent part shares one clock, the in-memory caches
    built here included, so TTLs, cooldowns and windows agree.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        ephemeral: CacheBackend | None = None,
        snapshot_cache: CacheBackend | None = None,
        health_checker: HealthChecker | None = None,
        catalog: ModelCatalog | None = None,
        cooldown_seconds: float = 300,
        ephemeral_ttl_seconds: float = 600,
        window_seconds: float = 86400,
        snapshot_ttl_seconds: float = 10,
        probe_timeout: float = 5.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.db = db_manager
        self.catalog = catalog or default_catalog
        self._ephemeral = ephemeral or InMemoryCache(
            default_ttl_seconds=ephemeral_ttl_seconds, clock=clock
        )
        self.tracker = QuotaTracker(
            db_manager,
            self._ephemeral,
            cooldown_seconds=cooldown_seconds,
            ephemeral_ttl_seconds=ephemeral_ttl_seconds,
            window_seconds=window_seconds,
            clock=clock,
        )
        self.exclusions = ExclusionRegistry(db_manager, clock=clock)
        self.rotator = RoundRobinRotator()
        self.activation = ActivationManager(db_manager)
        self.selector = PoolSelector(
            db_manager,
            self.tracker,
            self.exclusions,
            self.rotator,
            self.activation,
            health_checker=health_checker,
            catalog=self.catalog,
            snapshot_cache=snapshot_cache or InMemoryCache(
                default_ttl_seconds=snapshot_ttl_seconds, clock=clock
            ),
            snapshot_ttl_seconds=snapshot_ttl_seconds,
            probe_timeout=probe_timeout,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        health_checker: HealthChecker | None = None,
    ) -> "PoolManager":
        """Build a manager from configuration."""
        settings = settings or get_settings()
        db_manager = DatabaseManager(settings.database_url)
        return cls(
            db_manager,
            ephemeral=create_cache(settings.cache_backend),
            snapshot_cache=create_cache(
                settings.cache_backend,
                ttl_seconds=settings.quota_cache_ttl_seconds,
            ),
            health_checker=health_checker or GeminiHealthChecker(settings.provider_base_url),
            cooldown_seconds=settings.exhaustion_cooldown_seconds,
            ephemeral_ttl_seconds=settings.exhaustion_cache_ttl_seconds,
            window_seconds=settings.quota_window_seconds,
            snapshot_ttl_seconds=settings.quota_cache_ttl_seconds,
            probe_timeout=settings.health_probe_timeout,
        )

    def init_db(self) -> None:
        self.db.init_db()

    async def select(self, tenant_id: str) -> Selection | None:
        return await self.selector.select(tenant_id)

    async def report_success(self, credential_id: str, model_name: str, tokens: int = 0) -> bool:
        return await self.tracker.record_success(credential_id, model_name, tokens)

    async def report_exhausted(
        self,
        model_name: str,
        tenant_id: str,
        observed_limit: int | None = None,
    ) -> int:
        updated = await self.tracker.record_exhausted(model_name, tenant_id, observed_limit)
        await self.selector.invalidate_snapshot(tenant_id, model_name)
        return updated

    def owns_credential(self, tenant_id: str, credential_id: str) -> bool:
        """Whether the credential exists and belongs to the tenant."""
        with self.db.get_session() as session:
            credential = CredentialRepository(session, self.catalog).get_credential(credential_id)
            return credential is not None and credential.tenant_id == tenant_id

    def exclude_model(
        self,
        model_name: str,
        credential_id: str,
        tenant_id: str,
        reason: str = RPD_EXHAUSTED,
    ) -> ExclusionEntry:
        return self.exclusions.exclude(model_name, credential_id, tenant_id, reason)

    def is_model_excluded(self, model_name: str, credential_id: str, tenant_id: str) -> bool:
        return self.exclusions.is_excluded(model_name, credential_id, tenant_id)

    def remove_exclusion(self, entry_id: str) -> bool:
        return self.exclusions.remove(entry_id)

    def list_exclusions(self, tenant_id: str) -> list[ExclusionEntry]:
        return self.exclusions.list_entries(tenant_id)

    async def get_quota_snapshot(self, tenant_id: str, model_name: str) -> QuotaSnapshot:
        return await self.selector.calculate_total_quota(tenant_id, model_name)

    async def sweep_exclusions(self) -> dict[str, int]:
        return await self.exclusions.sweep(self.tracker)

    @property
    def flagged_tenants(self) -> set[str]:
        """Tenants whose last selection could not be persisted as active."""
        return set(self.selector.flagged_tenants)

    def clear_flag(self, tenant_id: str) -> None:
        self.selector.flagged_tenants.discard(tenant_id)

    async def close(self) -> None:
        await self.selector.close()
        await self._ephemeral.close()
        self.db.close()
        logger.info("Pool manager closed")
