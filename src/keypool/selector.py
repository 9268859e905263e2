"""
Credential/model selection for a tenant.

Answers "which (credential, model) should the next provider call use?"
by combining the catalog, quota headroom, exclusions, round-robin tie
breaking and credential activation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from keypool.activation import ActivationManager
from keypool.cache.base import CacheBackend
from keypool.cache.memory import InMemoryCache
from keypool.catalog import ModelCatalog, default_catalog
from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential, CredentialModel
from keypool.db.repository import CredentialRepository
from keypool.errors import KeyPoolError
from keypool.exclusions import HEALTH_CHECK_FAILED, ExclusionRegistry
from keypool.health import DEFAULT_PROBE_TIMEOUT, HealthChecker, probe
from keypool.quota.tracker import QuotaTracker
from keypool.rotation import Candidate, RoundRobinRotator

logger = logging.getLogger(__name__)

# How the returned pair relates to the tenant's active credential
SWITCH_NONE = "none"
SWITCH_ROTATED = "rotated"
SWITCH_FAILOVER = "failover"


@dataclass
class Selection:
    """The pair a caller should use for its next provider call."""

    credential_id: str
    api_handle: str = field(repr=False)
    model_name: str
    model_id: str
    switch_type: str = SWITCH_NONE
    activation_failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "model_name": self.model_name,
            "model_id": self.model_id,
            "switch_type": self.switch_type,
            "activation_failed": self.activation_failed,
        }


@dataclass
class QuotaSnapshot:
    """Aggregated quota for one model name across a tenant's credentials."""

    tenant_id: str
    model_name: str
    total_used: int
    total_limit: int
    percentage_used: float
    available_candidates: list[Candidate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "model_name": self.model_name,
            "total_used": self.total_used,
            "total_limit": self.total_limit,
            "percentage_used": self.percentage_used,
            "available_candidates": [
                {
                    "credential_id": c.credential_id,
                    "credential_priority": c.credential_priority,
                    "model_id": c.model_id,
                    "model_name": c.model_name,
                    "model_priority": c.model_priority,
                }
                for c in self.available_candidates
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuotaSnapshot":
        return cls(
            tenant_id=data["tenant_id"],
            model_name=data["model_name"],
            total_used=data["total_used"],
            total_limit=data["total_limit"],
            percentage_used=data["percentage_used"],
            available_candidates=[Candidate(**c) for c in data["available_candidates"]],
        )


def snapshot_key(tenant_id: str, model_name: str) -> str:
    return f"quota:{tenant_id}:{model_name}"


def percentage(used: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return round(used / limit * 100, 2)


class PoolSelector:
    """
    Picks the next usable (credential, model) pair for a tenant.

    Search order:
    1. The tenant's active credential, its models in ascending priority.
    2. Every credential of the tenant in ascending priority.

    A model is eligible when it is enabled, in the catalog, not excluded,
    and has headroom. Catalog-verified models are accepted as is; other
    catalog models must pass a bounded health probe first.

    Credentials sharing the winner's priority that hold an eligible model
    of the same name are equally ranked; the rotator spreads calls across
    them. A winner that is not the active credential gets activated.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        tracker: QuotaTracker,
        exclusions: ExclusionRegistry,
        rotator: RoundRobinRotator,
        activation: ActivationManager,
        health_checker: HealthChecker | None = None,
        catalog: ModelCatalog | None = None,
        snapshot_cache: CacheBackend | None = None,
        snapshot_ttl_seconds: float = 10,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        """
        Initialize the selector.

        Args:
            db_manager: Durable store
            tracker: Quota headroom source
            exclusions: Exclusion registry
            rotator: Tie breaker for equally ranked credentials
            activation: Active-credential swapper
            health_checker: Probe for models outside the verified set;
                without one those models are never selected
            catalog: Supported model names
            snapshot_cache: Cache for aggregated quota snapshots
            snapshot_ttl_seconds: Lifetime of a cached snapshot
            probe_timeout: Hard timeout for one health probe
        """
        self._db = db_manager
        self._tracker = tracker
        self._exclusions = exclusions
        self._rotator = rotator
        self._activation = activation
        self._health_checker = health_checker
        self._catalog = catalog or default_catalog
        self._snapshot_cache = snapshot_cache or InMemoryCache(default_ttl_seconds=snapshot_ttl_seconds)
        self._snapshot_ttl = snapshot_ttl_seconds
        self._probe_timeout = probe_timeout
        self.flagged_tenants: set[str] = set()

    def _load_credentials(self, tenant_id: str) -> list[Credential]:
        with self._db.get_session() as session:
            return CredentialRepository(session, self._catalog).list_credentials(tenant_id)

    async def select(self, tenant_id: str) -> Selection | None:
        """
        Select the next (credential, model) pair for a tenant.

        Returns:
            Selection, or None when no credential has an eligible model
        """
        credentials = self._load_credentials(tenant_id)
        if not credentials:
            logger.warning(f"Tenant {tenant_id} has no credentials configured")
            return None

        active = next((c for c in credentials if c.is_active), None)

        winner: tuple[Credential, CredentialModel] | None = None
        if active is not None:
            model = await self._first_eligible(tenant_id, active)
            if model is not None:
                winner = (active, model)

        if winner is None:
            for credential in credentials:
                if active is not None and credential.id == active.id:
                    continue
                model = await self._first_eligible(tenant_id, credential)
                if model is not None:
                    winner = (credential, model)
                    break

        if winner is None:
            logger.warning(f"No eligible credential/model for tenant {tenant_id}")
            return None

        credential, model = winner
        chosen = await self._break_tie(tenant_id, credentials, credential, model)

        if active is not None and chosen.credential_id == active.id:
            switch_type = SWITCH_NONE
        elif credential is active:
            switch_type = SWITCH_ROTATED
        else:
            switch_type = SWITCH_FAILOVER

        selection = Selection(
            credential_id=chosen.credential_id,
            api_handle=chosen.api_key,
            model_name=chosen.model_name,
            model_id=chosen.model_id,
            switch_type=switch_type,
        )

        if active is None or chosen.credential_id != active.id:
            try:
                await self._activation.activate(chosen.credential_id)
            except KeyPoolError as e:
                logger.error(
                    f"Selected {chosen.credential_id} for tenant {tenant_id} but could not "
                    f"activate it, flagging tenant: {e}"
                )
                self.flagged_tenants.add(tenant_id)
                selection.activation_failed = True

        logger.info(
            f"Selected {selection.model_name} on {selection.credential_id} "
            f"for tenant {tenant_id} ({selection.switch_type})"
        )
        return selection

    async def _first_eligible(self, tenant_id: str, credential: Credential) -> CredentialModel | None:
        for model in sorted(credential.models, key=lambda m: (m.priority, m.name)):
            if await self._is_eligible(tenant_id, credential, model):
                return model
        return None

    def _is_listed(self, tenant_id: str, credential: Credential, model: CredentialModel) -> bool:
        """Enabled, in the catalog and not excluded; quota is checked separately."""
        if not model.enabled:
            return False

        if not self._catalog.is_supported(model.name):
            logger.debug(f"Skipping unsupported model {model.name} on {credential.id}")
            return False

        if self._exclusions.is_excluded(model.name, credential.id, tenant_id):
            logger.debug(f"Skipping excluded model {model.name} on {credential.id}")
            return False

        return True

    async def _is_eligible(self, tenant_id: str, credential: Credential, model: CredentialModel) -> bool:
        if not self._is_listed(tenant_id, credential, model):
            return False

        headroom = await self._tracker.headroom(model, tenant_id)
        if not headroom.available:
            logger.debug(f"Skipping {model.name} on {credential.id}: {headroom.reason}")
            return False

        if self._catalog.is_verified(model.name):
            return True

        return await self._probe(tenant_id, credential, model)

    async def _probe(self, tenant_id: str, credential: Credential, model: CredentialModel) -> bool:
        if self._health_checker is None:
            logger.warning(f"No health checker configured, skipping unverified model {model.name}")
            return False

        if await probe(self._health_checker, credential.api_key, model.name, self._probe_timeout):
            return True

        try:
            self._exclusions.exclude(model.name, credential.id, tenant_id, HEALTH_CHECK_FAILED)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record health exclusion for {model.name} on {credential.id}: {e}")
        return False

    async def _break_tie(
        self,
        tenant_id: str,
        credentials: list[Credential],
        winner: Credential,
        model: CredentialModel,
    ) -> Candidate:
        group = [self._candidate(winner, model)]
        for peer in credentials:
            if peer.id == winner.id or peer.priority != winner.priority:
                continue
            peer_model = next((m for m in peer.models if m.name == model.name), None)
            if peer_model is not None and await self._is_eligible(tenant_id, peer, peer_model):
                group.append(self._candidate(peer, peer_model))

        if len(group) == 1:
            return group[0]
        return await self._rotator.choose(tenant_id, group)

    @staticmethod
    def _candidate(credential: Credential, model: CredentialModel) -> Candidate:
        return Candidate(
            credential_id=credential.id,
            credential_priority=credential.priority,
            model_id=model.id,
            model_name=model.name,
            model_priority=model.priority,
            api_key=credential.api_key,
        )

    async def calculate_total_quota(self, tenant_id: str, model_name: str) -> QuotaSnapshot:
        """
        Aggregate quota for a model name across the tenant's credentials.

        Cached per (tenant, model name) for a few seconds. Recording an
        exhaustion drops the cached entry, so a snapshot never hides one.

        Returns:
            QuotaSnapshot with totals and the still-available candidates,
            ordered by credential priority then least recently used
        """
        key = snapshot_key(tenant_id, model_name)
        cached = await self._snapshot_cache.get(key)
        if cached is not None:
            return QuotaSnapshot.from_dict(cached)

        with self._db.get_session() as session:
            models = CredentialRepository(session, self._catalog).models_named(tenant_id, model_name)

        # Totals use each row's effective usage, so a lapsed window counts as reset
        total_used = 0
        total_limit = 0
        available = []
        for model in models:
            headroom = await self._tracker.headroom(model, tenant_id)
            total_used += headroom.used
            total_limit += headroom.limit
            if headroom.available and self._is_listed(tenant_id, model.credential, model):
                available.append(self._candidate(model.credential, model))

        snapshot = QuotaSnapshot(
            tenant_id=tenant_id,
            model_name=model_name,
            total_used=total_used,
            total_limit=total_limit,
            percentage_used=percentage(total_used, total_limit),
            available_candidates=available,
        )
        await self._snapshot_cache.set(key, snapshot.to_dict(), ttl_seconds=self._snapshot_ttl)
        return snapshot

    async def invalidate_snapshot(self, tenant_id: str, model_name: str) -> None:
        await self._snapshot_cache.delete(snapshot_key(tenant_id, model_name))

    async def close(self) -> None:
        await self._snapshot_cache.close()
        if self._health_checker is not None:
            await self._health_checker.close()
