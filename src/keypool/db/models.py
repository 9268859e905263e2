"""SQLAlchemy models for the credential pool database."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from keypool.db.base import Base


class Credential(Base):
    """Tenant-scoped API key bundling one or more models."""

    __tablename__ = "credentials"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Relationships
    models: Mapped[list["CredentialModel"]] = relationship(
        "CredentialModel",
        back_populates="credential",
        cascade="all, delete-orphan",
        order_by="CredentialModel.priority",
    )

    __table_args__ = (
        Index("ix_credentials_tenant_priority", "tenant_id", "priority"),
        Index("ix_credentials_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<Credential {self.name} tenant={self.tenant_id} "
            f"priority={self.priority} active={self.is_active}>"
        )


class CredentialModel(Base):
    """A named backend model callable through a credential, with its quota."""

    __tablename__ = "credential_models"

    credential_id: Mapped[str] = mapped_column(
        ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Usage within the current window
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    limit: Mapped[int] = mapped_column("quota_limit", Integer, nullable=False)
    window_started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    exhausted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Relationships
    credential: Mapped["Credential"] = relationship("Credential", back_populates="models")
    rate_windows: Mapped[list["RateWindow"]] = relationship(
        "RateWindow",
        back_populates="model",
        cascade="all, delete-orphan",
        order_by="RateWindow.kind",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("credential_id", "name", name="uq_credential_models_credential_name"),
    )

    def __repr__(self) -> str:
        return f"<CredentialModel {self.name} used={self.used}/{self.limit}>"


class RateWindow(Base):
    """Rolling request or token window of a credential model (rpm, rph, rpd, tpm)."""

    __tablename__ = "rate_windows"

    model_id: Mapped[str] = mapped_column(
        ForeignKey("credential_models.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    limit: Mapped[int] = mapped_column("window_limit", Integer, nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    model: Mapped["CredentialModel"] = relationship("CredentialModel", back_populates="rate_windows")

    __table_args__ = (
        UniqueConstraint("model_id", "kind", name="uq_rate_windows_model_kind"),
    )

    def __repr__(self) -> str:
        return f"<RateWindow {self.kind} used={self.used}/{self.limit}>"


class ExclusionEntry(Base):
    """Time-bounded denylist entry for a (model, credential, tenant) triple."""

    __tablename__ = "excluded_models"

    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    credential_id: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    excluded_at: Mapped[datetime] = mapped_column(nullable=False)
    retry_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_excluded_models_lookup", "model_name", "credential_id", "tenant_id"),
    )
