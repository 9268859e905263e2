"""Enforces a single active credential per tenant."""

import asyncio
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential
from keypool.errors import ActivationError, CredentialNotFoundError

logger = logging.getLogger(__name__)


class ActivationManager:
    """
    Swaps a tenant's active credential.

    The swap runs as one transaction: deactivate every other credential of
    the tenant, then activate the target. Swaps for the same tenant are
    serialized with a per-tenant lock; swaps for different tenants run
    independently and never touch each other's rows.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, tenant_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if tenant_id not in self._locks:
                self._locks[tenant_id] = asyncio.Lock()
            return self._locks[tenant_id]

    def _tenant_of(self, credential_id: str) -> str:
        with self._db.get_session() as session:
            tenant_id = session.scalars(
                select(Credential.tenant_id).where(Credential.id == credential_id)
            ).first()
        if tenant_id is None:
            raise CredentialNotFoundError(credential_id)
        return tenant_id

    async def activate(self, credential_id: str) -> Credential:
        """
        Make a credential the tenant's only active one.

        Args:
            credential_id: Credential to activate

        Returns:
            The activated credential, models loaded

        Raises:
            CredentialNotFoundError: If the credential does not exist
            ActivationError: If the swap could not be committed; the
                previous state is left intact
        """
        try:
            tenant_id = self._tenant_of(credential_id)
        except SQLAlchemyError as e:
            raise ActivationError(credential_id) from e

        async with await self._get_lock(tenant_id):
            now = datetime.utcnow()
            try:
                with self._db.get_session() as session:
                    session.execute(
                        update(Credential)
                        .where(
                            Credential.tenant_id == tenant_id,
                            Credential.id != credential_id,
                            Credential.is_active.is_(True),
                        )
                        .values(is_active=False, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    result = session.execute(
                        update(Credential)
                        .where(Credential.id == credential_id, Credential.tenant_id == tenant_id)
                        .values(is_active=True, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        # Deleted between lookup and swap; roll the deactivation back
                        raise CredentialNotFoundError(credential_id)

                    credential = session.scalars(
                        select(Credential)
                        .options(selectinload(Credential.models))
                        .where(Credential.id == credential_id)
                        .execution_options(populate_existing=True)
                    ).one()
            except SQLAlchemyError as e:
                logger.error(f"Activation of {credential_id} for tenant {tenant_id} failed: {e}")
                raise ActivationError(credential_id, tenant_id) from e

        logger.info(f"Activated credential {credential_id} for tenant {tenant_id}")
        return credential

    def active_credential(self, tenant_id: str) -> Credential | None:
        with self._db.get_session() as session:
            return session.scalars(
                select(Credential)
                .options(selectinload(Credential.models))
                .where(Credential.tenant_id == tenant_id, Credential.is_active.is_(True))
            ).first()
