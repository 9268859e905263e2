"""Repository for provisioning and reading credentials and their models."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from keypool.catalog import RATE_WINDOW_LENGTHS, ModelCatalog, default_catalog
from keypool.db.models import Credential, CredentialModel, RateWindow

logger = logging.getLogger(__name__)


class CredentialRepository:
    """
    Repository over the Credential and CredentialModel tables.

    The selector only reads through this class; provisioning helpers
    exist for the CLI and for tests.
    """

    def __init__(self, session: Session, catalog: ModelCatalog | None = None) -> None:
        """
        Initialize the repository.

        Args:
            session: SQLAlchemy session
            catalog: Catalog used for default quota limits
        """
        self._session = session
        self._catalog = catalog or default_catalog

    def add_credential(
        self,
        tenant_id: str,
        name: str,
        api_key: str,
        priority: int = 1,
        is_active: bool = False,
    ) -> Credential:
        """
        Add a credential for a tenant.

        Activating through this helper does not deactivate the tenant's
        other credentials; use ActivationManager for swaps.
        """
        credential = Credential(
            tenant_id=tenant_id,
            name=name,
            api_key=api_key,
            priority=priority,
            is_active=is_active,
        )
        self._session.add(credential)
        self._session.flush()
        return credential

    def add_model(
        self,
        credential_id: str,
        name: str,
        priority: int = 1,
        limit: int | None = None,
        used: int = 0,
        enabled: bool = True,
        rate_limits: dict[str, int] | None = None,
    ) -> CredentialModel:
        """
        Attach a model to a credential.

        Args:
            credential_id: Owning credential
            name: Model identifier
            priority: Ascending order of preference within the credential
            limit: Quota limit (catalog default when omitted)
            used: Initial usage counter
            enabled: Whether the model may be selected
            rate_limits: Rate window limits by kind (catalog values when omitted)

        Returns:
            Created CredentialModel instance
        """
        quota_limit = limit if limit is not None else self._catalog.default_limit(name)
        if quota_limit <= 0:
            raise ValueError(f"Quota limit must be positive, got {quota_limit}")

        if rate_limits is None:
            rate_limits = self._catalog.rate_limits(name)
        for kind, window_limit in rate_limits.items():
            if kind not in RATE_WINDOW_LENGTHS:
                raise ValueError(f"Unknown rate window: {kind}")
            if window_limit <= 0:
                raise ValueError(f"Rate limit {kind} must be positive, got {window_limit}")

        model = CredentialModel(
            credential_id=credential_id,
            name=name,
            priority=priority,
            limit=quota_limit,
            used=used,
            enabled=enabled,
            rate_windows=[
                RateWindow(kind=kind, limit=window_limit)
                for kind, window_limit in rate_limits.items()
            ],
        )
        self._session.add(model)
        self._session.flush()
        return model

    def get_credential(self, credential_id: str) -> Credential | None:
        stmt = (
            select(Credential)
            .options(selectinload(Credential.models))
            .where(Credential.id == credential_id)
        )
        return self._session.scalars(stmt).first()

    def list_credentials(self, tenant_id: str) -> list[Credential]:
        """Tenant's credentials in ascending priority, models preloaded."""
        stmt = (
            select(Credential)
            .options(selectinload(Credential.models))
            .where(Credential.tenant_id == tenant_id)
            .order_by(Credential.priority, Credential.id)
        )
        return list(self._session.scalars(stmt).all())

    def active_credential(self, tenant_id: str) -> Credential | None:
        stmt = (
            select(Credential)
            .options(selectinload(Credential.models))
            .where(Credential.tenant_id == tenant_id, Credential.is_active.is_(True))
            .order_by(Credential.priority)
        )
        return self._session.scalars(stmt).first()

    def get_model(self, credential_id: str, model_name: str) -> CredentialModel | None:
        stmt = select(CredentialModel).where(
            CredentialModel.credential_id == credential_id,
            CredentialModel.name == model_name,
        )
        return self._session.scalars(stmt).first()

    def models_named(self, tenant_id: str, model_name: str) -> list[CredentialModel]:
        """Every model called ``model_name`` under the tenant's credentials."""
        stmt = (
            select(CredentialModel)
            .join(Credential, CredentialModel.credential_id == Credential.id)
            .options(selectinload(CredentialModel.credential))
            .where(Credential.tenant_id == tenant_id, CredentialModel.name == model_name)
            .order_by(
                Credential.priority,
                CredentialModel.last_used_at.asc().nulls_first(),
                Credential.id,
            )
        )
        return list(self._session.scalars(stmt).all())
