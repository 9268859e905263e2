"""Quota and exclusion monitoring routes."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from keypool.exclusions import REASON_COOLDOWNS
from keypool.pool import PoolManager

logger = logging.getLogger(__name__)
router = APIRouter()


_pool_manager: Optional[PoolManager] = None


def get_pool_manager() -> PoolManager:
    """Get the global pool manager instance."""
    global _pool_manager
    if _pool_manager is None:
        _pool_manager = PoolManager.from_settings()
    return _pool_manager


def set_pool_manager(pool: Optional[PoolManager]) -> None:
    """Replace the global pool manager (None resets it)."""
    global _pool_manager
    _pool_manager = pool


# --- Request/Response Models ---

class CandidateItem(BaseModel):
    """A still-available (credential, model) pair."""
    credential_id: str
    credential_priority: int
    model_id: str
    model_name: str
    model_priority: int


class QuotaSnapshotResponse(BaseModel):
    """Aggregated quota for a model name."""
    tenant_id: str
    model_name: str
    total_used: int
    total_limit: int
    percentage_used: float
    available_candidates: list[CandidateItem]


class ExclusionItem(BaseModel):
    """Exclusion entry."""
    id: str
    model_name: str
    credential_id: str
    tenant_id: str
    reason: str
    excluded_at: datetime
    retry_at: datetime
    retry_count: int
    last_retry_at: datetime | None = None


class ExclusionListResponse(BaseModel):
    """Exclusions for a tenant."""
    tenant_id: str
    exclusions: list[ExclusionItem]
    total: int


class ExcludeRequest(BaseModel):
    """Request to exclude a model on a credential."""
    model_name: str = Field(..., min_length=1)
    credential_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    reason: str = Field(
        default="RPD_EXHAUSTED",
        description=f"Reason tag; known reasons: {', '.join(REASON_COOLDOWNS)}",
    )


class SweepResponse(BaseModel):
    """Result of an exclusion sweep."""
    checked: int
    removed: int
    rescheduled: int


def _exclusion_item(entry) -> ExclusionItem:
    return ExclusionItem(
        id=entry.id,
        model_name=entry.model_name,
        credential_id=entry.credential_id,
        tenant_id=entry.tenant_id,
        reason=entry.reason,
        excluded_at=entry.excluded_at,
        retry_at=entry.retry_at,
        retry_count=entry.retry_count,
        last_retry_at=entry.last_retry_at,
    )


# --- Endpoints ---

@router.get(
    "/tenants/{tenant_id}/quota/{model_name}",
    response_model=QuotaSnapshotResponse,
)
async def get_quota_snapshot(tenant_id: str, model_name: str):
    """Aggregated quota for a model name across the tenant's credentials."""
    snapshot = await get_pool_manager().get_quota_snapshot(tenant_id, model_name)
    if snapshot.total_limit == 0 and not snapshot.available_candidates:
        raise HTTPException(
            status_code=404,
            detail=f"No models named {model_name} for tenant {tenant_id}",
        )
    return QuotaSnapshotResponse(**snapshot.to_dict())


@router.get("/tenants/{tenant_id}/exclusions", response_model=ExclusionListResponse)
async def list_exclusions(tenant_id: str):
    """List a tenant's exclusion entries."""
    entries = get_pool_manager().list_exclusions(tenant_id)
    return ExclusionListResponse(
        tenant_id=tenant_id,
        exclusions=[_exclusion_item(e) for e in entries],
        total=len(entries),
    )


@router.post("/exclusions", response_model=ExclusionItem, status_code=201)
async def create_exclusion(request: ExcludeRequest):
    """Exclude a model on a credential owned by the tenant."""
    pool = get_pool_manager()
    if not pool.owns_credential(request.tenant_id, request.credential_id):
        raise HTTPException(
            status_code=404,
            detail=f"Credential {request.credential_id} not found for tenant {request.tenant_id}",
        )
    entry = pool.exclude_model(
        request.model_name,
        request.credential_id,
        request.tenant_id,
        request.reason,
    )
    return _exclusion_item(entry)


@router.delete("/exclusions/{entry_id}", status_code=204)
async def delete_exclusion(entry_id: str):
    """Remove an exclusion entry."""
    if not get_pool_manager().remove_exclusion(entry_id):
        raise HTTPException(status_code=404, detail=f"Exclusion not found: {entry_id}")


@router.post("/exclusions/sweep", response_model=SweepResponse)
async def sweep_exclusions():
    """Re-evaluate exclusions whose retry time has passed."""
    stats = await get_pool_manager().sweep_exclusions()
    return SweepResponse(**stats)
