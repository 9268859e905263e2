"""
Time-bounded denylist of (model, credential, tenant) triples.

Exclusion is independent of quota: a model that failed a health probe
stays excluded even while it has headroom, and an exhausted model is not
excluded unless someone says so.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential, CredentialModel, ExclusionEntry
from keypool.quota.tracker import QuotaTracker

logger = logging.getLogger(__name__)

RPD_EXHAUSTED = "RPD_EXHAUSTED"
HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
PROVIDER_ABUSE = "PROVIDER_ABUSE"

REASON_COOLDOWNS: dict[str, timedelta] = {
    RPD_EXHAUSTED: timedelta(hours=6),
    HEALTH_CHECK_FAILED: timedelta(minutes=30),
    PROVIDER_ABUSE: timedelta(hours=24),
}
DEFAULT_COOLDOWN = timedelta(hours=6)

# Sweep backoff for entries that are still unusable when retry_at passes
FIRST_RETRY_DELAY = timedelta(hours=3)


def cooldown_for(reason: str) -> timedelta:
    return REASON_COOLDOWNS.get(reason, DEFAULT_COOLDOWN)


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the next UTC day, when daily provider quotas reset."""
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


class ExclusionRegistry:
    """
    CRUD over ExclusionEntry rows.

    Every read goes to the durable store, so an exclusion is visible to
    the next ``is_excluded`` call as soon as ``exclude`` returns.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db_manager
        self._clock = clock

    def exclude(
        self,
        model_name: str,
        credential_id: str,
        tenant_id: str,
        reason: str,
    ) -> ExclusionEntry:
        """
        Exclude a model on one credential for a tenant.

        An existing entry for the same triple is refreshed instead of
        duplicated: its reason and retry time are replaced and its retry
        counter starts over.

        Args:
            model_name: Model to exclude
            credential_id: Credential the model belongs to
            tenant_id: Owning tenant
            reason: Reason tag; picks the cooldown

        Returns:
            The stored entry
        """
        now = self._clock()
        retry_at = now + cooldown_for(reason)

        with self._db.get_session() as session:
            entry = session.scalars(
                select(ExclusionEntry).where(
                    ExclusionEntry.model_name == model_name,
                    ExclusionEntry.credential_id == credential_id,
                    ExclusionEntry.tenant_id == tenant_id,
                )
            ).first()

            if entry is None:
                entry = ExclusionEntry(
                    model_name=model_name,
                    credential_id=credential_id,
                    tenant_id=tenant_id,
                    reason=reason,
                    excluded_at=now,
                    retry_at=retry_at,
                )
                session.add(entry)
            else:
                entry.reason = reason
                entry.excluded_at = now
                entry.retry_at = retry_at
                entry.retry_count = 0
                entry.last_retry_at = None
            session.flush()

        logger.warning(
            f"Excluded {model_name} on credential {credential_id} for tenant {tenant_id}: "
            f"{reason} (retry at {retry_at.isoformat()})"
        )
        return entry

    def is_excluded(self, model_name: str, credential_id: str, tenant_id: str) -> bool:
        """True while an entry for the triple has a retry time in the future."""
        now = self._clock()
        try:
            with self._db.get_session() as session:
                entry_id = session.scalars(
                    select(ExclusionEntry.id).where(
                        ExclusionEntry.model_name == model_name,
                        ExclusionEntry.credential_id == credential_id,
                        ExclusionEntry.tenant_id == tenant_id,
                        ExclusionEntry.retry_at > now,
                    )
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"Exclusion lookup failed for {model_name} on {credential_id}: {e}")
            return False
        return entry_id is not None

    def remove(self, entry_id: str) -> bool:
        """
        Delete an entry.

        Returns:
            True if an entry was deleted
        """
        with self._db.get_session() as session:
            entry = session.get(ExclusionEntry, entry_id)
            if entry is None:
                logger.debug(f"Exclusion entry {entry_id} not found")
                return False
            session.delete(entry)

        logger.info(f"Removed exclusion {entry_id} ({entry.model_name} on {entry.credential_id})")
        return True

    def list_entries(self, tenant_id: str) -> list[ExclusionEntry]:
        """Tenant's entries, soonest retry first."""
        try:
            with self._db.get_session() as session:
                stmt = (
                    select(ExclusionEntry)
                    .where(ExclusionEntry.tenant_id == tenant_id)
                    .order_by(ExclusionEntry.retry_at, ExclusionEntry.id)
                )
                return list(session.scalars(stmt).all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to list exclusions for tenant {tenant_id}: {e}")
            return []

    async def sweep(self, tracker: QuotaTracker) -> dict[str, int]:
        """
        Re-evaluate entries whose retry time has passed.

        Entries whose model row is gone or disabled are dropped, as are
        entries whose model has headroom again. The rest are pushed back:
        three hours on the first retry, then to the next UTC midnight.

        Args:
            tracker: Tracker used to check headroom

        Returns:
            Counts of ``checked``, ``removed`` and ``rescheduled`` entries
        """
        now = self._clock()
        stats = {"checked": 0, "removed": 0, "rescheduled": 0}

        with self._db.get_session() as session:
            due = list(
                session.scalars(
                    select(ExclusionEntry)
                    .where(ExclusionEntry.retry_at <= now)
                    .order_by(ExclusionEntry.retry_at)
                ).all()
            )

            for entry in due:
                stats["checked"] += 1
                model = session.scalars(
                    select(CredentialModel)
                    .join(Credential, CredentialModel.credential_id == Credential.id)
                    .where(
                        CredentialModel.credential_id == entry.credential_id,
                        CredentialModel.name == entry.model_name,
                        Credential.tenant_id == entry.tenant_id,
                    )
                ).first()

                if model is None or not model.enabled:
                    logger.info(f"Dropping exclusion {entry.id}: {entry.model_name} missing or disabled")
                    session.delete(entry)
                    stats["removed"] += 1
                    continue

                headroom = await tracker.headroom(model, entry.tenant_id)
                if headroom.available:
                    logger.info(
                        f"{entry.model_name} on {entry.credential_id} has headroom again, "
                        f"lifting exclusion {entry.id}"
                    )
                    session.delete(entry)
                    stats["removed"] += 1
                    continue

                if entry.retry_count == 0:
                    entry.retry_at = now + FIRST_RETRY_DELAY
                else:
                    entry.retry_at = next_utc_midnight(now)
                entry.retry_count += 1
                entry.last_retry_at = now
                stats["rescheduled"] += 1
                logger.info(
                    f"{entry.model_name} on {entry.credential_id} still unavailable "
                    f"({headroom.reason}), retry #{entry.retry_count} at {entry.retry_at.isoformat()}"
                )

        if stats["checked"]:
            logger.info(
                f"Exclusion sweep: {stats['checked']} checked, {stats['removed']} removed, "
                f"{stats['rescheduled']} rescheduled"
            )
        return stats
