"""
Quota bookkeeping for credential models.

Two tiers: usage counters and exhaustion stamps live in the durable
store, and a tenant-scoped set of recently exhausted model names lives
in the ephemeral cache so hot paths can skip them without a read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, case, literal, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from keypool.cache.base import CacheBackend
from keypool.catalog import RATE_WINDOW_LENGTHS, TOKEN_WINDOWS
from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential, CredentialModel, RateWindow

logger = logging.getLogger(__name__)


@dataclass
class Headroom:
    """Result of a headroom check."""

    used: int
    """Usage counted against the current window."""

    limit: int
    """Window limit."""

    available: bool
    """Whether the model may be handed out now."""

    reason: str = "ok"

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "available": self.available,
            "remaining": self.remaining,
            "reason": self.reason,
        }


def exhaustion_key(tenant_id: str, model_name: str) -> str:
    """Ephemeral-tier key marking a model name exhausted for one tenant."""
    return f"exhausted:{tenant_id}:{model_name}"


class QuotaTracker:
    """
    Tracks consumption against provider limits.

    Counters only move on outcomes reported by the caller: a confirmed
    success adds exactly one, a provider quota error clamps the counter
    to the limit. Nothing is incremented speculatively.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        ephemeral: CacheBackend,
        cooldown_seconds: float = 300,
        ephemeral_ttl_seconds: float = 600,
        window_seconds: float = 86400,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            db_manager: Durable store
            ephemeral: Cache holding the exhaustion fast-path set
            cooldown_seconds: Minimum time after exhaustedAt before reuse
            ephemeral_ttl_seconds: Lifetime of fast-path set entries
            window_seconds: Usage window length; older windows count as reset
            clock: Source of the current UTC time
        """
        self._db = db_manager
        self._ephemeral = ephemeral
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._ephemeral_ttl = ephemeral_ttl_seconds
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    @property
    def ephemeral(self) -> CacheBackend:
        return self._ephemeral

    def _window_expired(self, window_started_at: datetime | None, now: datetime) -> bool:
        return window_started_at is not None and now - window_started_at >= self._window

    async def headroom(self, model: CredentialModel, tenant_id: str) -> Headroom:
        """
        Check whether a model has quota left.

        A model is available when it is under its limit, not in the
        tenant's ephemeral exhaustion set, and any recorded exhaustion is
        older than the cooldown. A window older than the configured length
        is treated as reset and the reset is written back.

        Args:
            model: Model row to check
            tenant_id: Owning tenant (scopes the ephemeral set)

        Returns:
            Headroom with the effective counters
        """
        now = self._clock()
        used = model.used
        exhausted_at = model.exhausted_at

        if self._window_expired(model.window_started_at, now):
            used = 0
            exhausted_at = None
            self._reset_window(model, now)

        if await self._ephemeral.exists(exhaustion_key(tenant_id, model.name)):
            return Headroom(used, model.limit, False, "recently exhausted")

        if exhausted_at is not None and now - exhausted_at < self._cooldown:
            return Headroom(used, model.limit, False, "exhaustion cooldown")

        if used >= model.limit:
            return Headroom(used, model.limit, False, "limit reached")

        window = self._saturated_window(model, now)
        if window is not None:
            return Headroom(used, model.limit, False, f"{window.kind} limit reached")

        return Headroom(used, model.limit, True)

    def _saturated_window(self, model: CredentialModel, now: datetime) -> RateWindow | None:
        """First still-open rate window at its limit; lapsed windows never block."""
        for window in model.rate_windows:
            if window.started_at is None or window.limit <= 0:
                continue
            if now - window.started_at >= RATE_WINDOW_LENGTHS[window.kind]:
                continue
            if window.used >= window.limit:
                return window
        return None

    def _reset_window(self, model: CredentialModel, now: datetime) -> None:
        """Persist a lapsed window as reset; conditional so concurrent resets are idempotent."""
        stmt = (
            update(CredentialModel)
            .where(
                CredentialModel.id == model.id,
                CredentialModel.window_started_at == model.window_started_at,
            )
            .values(used=0, exhausted_at=None, window_started_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._db.get_session() as session:
                result = session.execute(stmt)
            if result.rowcount:
                logger.info(f"Usage window reset for model {model.name} ({model.id})")
        except SQLAlchemyError as e:
            logger.warning(f"Failed to persist window reset for {model.name} ({model.id}): {e}")

    async def record_success(self, credential_id: str, model_name: str, tokens: int = 0) -> bool:
        """
        Count one confirmed successful provider call.

        The increment is a single UPDATE so concurrent successes on the
        same row never lose updates. Once exhaustion has been recorded the
        counter stays clamped at the limit until the window resets.

        The model's rate windows advance in the same transaction: request
        windows by one, token windows by ``tokens``. A lapsed window
        restarts at the call.

        Args:
            credential_id: Credential the call was made with
            model_name: Model that served the call
            tokens: Total tokens the provider reported for the call

        Returns:
            True if a model row was updated
        """
        now = self._clock()
        cutoff = now - self._window
        row = and_(
            CredentialModel.credential_id == credential_id,
            CredentialModel.name == model_name,
        )

        reset_lapsed = (
            update(CredentialModel)
            .where(
                row,
                CredentialModel.window_started_at.is_not(None),
                CredentialModel.window_started_at <= cutoff,
            )
            .values(used=0, exhausted_at=None, window_started_at=now)
            .execution_options(synchronize_session=False)
        )
        increment = (
            update(CredentialModel)
            .where(row)
            .values(
                used=case(
                    (
                        and_(
                            CredentialModel.exhausted_at.is_not(None),
                            CredentialModel.used >= CredentialModel.limit,
                        ),
                        CredentialModel.used,
                    ),
                    else_=CredentialModel.used + 1,
                ),
                window_started_at=case(
                    (CredentialModel.window_started_at.is_(None), now),
                    else_=CredentialModel.window_started_at,
                ),
                last_used_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        try:
            with self._db.get_session() as session:
                session.execute(reset_lapsed)
                result = session.execute(increment)
                for stmt in self._advance_windows(row, now, max(0, tokens)):
                    session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record success for {model_name} on {credential_id}: {e}")
            return False

        if not result.rowcount:
            logger.warning(f"Model {model_name} not found on credential {credential_id}")
            return False

        logger.debug(f"Recorded success for {model_name} on {credential_id} ({tokens} tokens)")
        return True

    def _advance_windows(self, row, now: datetime, tokens: int) -> list:
        """One UPDATE per window kind; each restarts its window when lapsed."""
        model_ids = select(CredentialModel.id).where(row)
        statements = []
        for kind, length in RATE_WINDOW_LENGTHS.items():
            amount = tokens if kind in TOKEN_WINDOWS else 1
            if not amount:
                continue
            lapsed = or_(RateWindow.started_at.is_(None), RateWindow.started_at <= now - length)
            statements.append(
                update(RateWindow)
                .where(RateWindow.model_id.in_(model_ids), RateWindow.kind == kind)
                .values(
                    used=case((lapsed, amount), else_=RateWindow.used + amount),
                    started_at=case((lapsed, now), else_=RateWindow.started_at),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        return statements

    async def record_exhausted(
        self,
        model_name: str,
        tenant_id: str,
        observed_limit: int | None = None,
    ) -> int:
        """
        Mark a model name exhausted across one tenant's credentials.

        Every model called ``model_name`` under the tenant gets
        used = limit = observed_limit (its previous limit when no usable
        value was observed) and an exhaustion stamp. The name also goes
        into the tenant's ephemeral set for the fast path. Other tenants
        are never touched.

        Args:
            model_name: Model reported as over quota by the provider
            tenant_id: Tenant whose call hit the limit
            observed_limit: Limit reported by the provider, if any

        Returns:
            Number of model rows updated
        """
        now = self._clock()
        cutoff = now - self._window

        if observed_limit is not None and observed_limit > 0:
            new_limit = literal(int(observed_limit))
        else:
            new_limit = CredentialModel.limit

        tenant_credentials = select(Credential.id).where(Credential.tenant_id == tenant_id)
        stmt = (
            update(CredentialModel)
            .where(
                CredentialModel.name == model_name,
                CredentialModel.credential_id.in_(tenant_credentials),
            )
            .values(
                {
                    CredentialModel.used: new_limit,
                    CredentialModel.limit: new_limit,
                    CredentialModel.exhausted_at: now,
                    CredentialModel.window_started_at: case(
                        (
                            or_(
                                CredentialModel.window_started_at.is_(None),
                                CredentialModel.window_started_at <= cutoff,
                            ),
                            now,
                        ),
                        else_=CredentialModel.window_started_at,
                    ),
                    CredentialModel.updated_at: now,
                }
            )
            .execution_options(synchronize_session=False)
        )

        updated = 0
        try:
            with self._db.get_session() as session:
                updated = session.execute(stmt).rowcount or 0
        except SQLAlchemyError as e:
            # The fast-path entry below still keeps callers off the model
            logger.error(f"Failed to persist exhaustion of {model_name} for tenant {tenant_id}: {e}")
        else:
            if not updated:
                logger.warning(f"No models named {model_name} for tenant {tenant_id}")
                return 0

        await self._ephemeral.set(
            exhaustion_key(tenant_id, model_name),
            now.isoformat(),
            ttl_seconds=self._ephemeral_ttl,
        )
        logger.warning(
            f"Model {model_name} exhausted for tenant {tenant_id} "
            f"({updated} rows, limit={observed_limit or 'unchanged'})"
        )
        return updated

    async def is_recently_exhausted(self, tenant_id: str, model_name: str) -> bool:
        return await self._ephemeral.exists(exhaustion_key(tenant_id, model_name))
