"""Provider management routes."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from aggregator.api.deps import get_task_runner
from aggregator.ingest.provider_health import provider_error_tracker
from aggregator.worker.tasks import TaskRunner

router = APIRouter(prefix="/api/providers", tags=["providers"])


class ProviderResponse(BaseModel):
    id: int
    name: str
    slug: str
    enabled: bool
    is_preferred: bool
    pricing_margin_percent: Decimal
    min_margin_percent: Decimal
    failover_priority: int
    sync_interval_minutes: int
    api_rate_limit_per_hour: int
    last_sync_at: Optional[datetime]
    is_stale: bool = False
    is_syncing: bool = False

    class Config:
        from_attributes = True


class MarginUpdate(BaseModel):
    pricing_margin_percent: Decimal = Field(..., ge=0)
    min_margin_percent: Optional[Decimal] = Field(None, ge=0)


class MarginUpdateResponse(BaseModel):
    provider: ProviderResponse
    packages_checked: int
    packages_repriced: int


class EnabledUpdate(BaseModel):
    enabled: bool


class SyncResultResponse(BaseModel):
    """Response model for a finished sync."""
    provider_id: int
    provider_slug: str
    run_id: str
    trigger: str
    status: str
    started: bool
    pages_fetched: int
    offers_seen: int
    packages_processed: int
    normalization_errors: int
    packages_created: int
    packages_updated: int
    packages_deactivated: int
    error_code: Optional[str]
    error_message: Optional[str]
    duration_seconds: float

    class Config:
        from_attributes = True


def _provider_response(runner: TaskRunner, snapshot) -> ProviderResponse:
    response = ProviderResponse.model_validate(snapshot)
    response.is_stale = snapshot.is_stale()
    response.is_syncing = runner.is_syncing(snapshot.id)
    return response


@router.get("", response_model=List[ProviderResponse])
async def list_providers(runner: TaskRunner = Depends(get_task_runner)):
    """List all providers in failover order."""
    return [_provider_response(runner, p) for p in await runner.registry.list_all()]


@router.get("/health")
async def provider_health():
    """Consecutive error counts per provider."""
    return {"providers": provider_error_tracker.get_status()}


@router.post("/sync-all", response_model=List[SyncResultResponse])
async def sync_all_providers(runner: TaskRunner = Depends(get_task_runner)):
    """Sync every enabled provider concurrently and wait for the results."""
    return await runner.sync_all(trigger="manual")


@router.get("/{provider_id}", response_model=ProviderResponse)
async def get_provider(provider_id: int, runner: TaskRunner = Depends(get_task_runner)):
    """Get a provider by ID."""
    return _provider_response(runner, await runner.registry.get(provider_id))


@router.patch("/{provider_id}/margin", response_model=MarginUpdateResponse)
async def update_margin(
    provider_id: int,
    data: MarginUpdate,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Change a provider's margin and reprice its packages."""
    snapshot, recompute = await runner.update_provider_margin(
        provider_id, data.pricing_margin_percent, data.min_margin_percent
    )
    return MarginUpdateResponse(
        provider=_provider_response(runner, snapshot),
        packages_checked=recompute.checked,
        packages_repriced=recompute.changed,
    )


@router.patch("/{provider_id}/enabled", response_model=ProviderResponse)
async def set_enabled(
    provider_id: int,
    data: EnabledUpdate,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Enable or disable a provider."""
    return _provider_response(runner, await runner.registry.set_enabled(provider_id, data.enabled))


@router.post("/{provider_id}/sync", status_code=202)
async def trigger_sync(provider_id: int, runner: TaskRunner = Depends(get_task_runner)):
    """
    Start a manual sync in the background.

    Returns 409 if the provider is already syncing in this or another process.
    """
    snapshot = await runner.registry.get(provider_id)
    await runner.ensure_sync_available(snapshot.id)
    runner.start_sync(snapshot.id, trigger="manual")
    return {"message": f"Sync started for {snapshot.slug}", "provider_id": snapshot.id}


@router.post("/{provider_id}/sync/wait", response_model=SyncResultResponse)
async def run_sync(provider_id: int, runner: TaskRunner = Depends(get_task_runner)):
    """Run a manual sync and wait for it to finish."""
    return await runner.sync_provider(provider_id, trigger="manual")


@router.post("/{provider_id}/sync/cancel")
async def cancel_sync(provider_id: int, runner: TaskRunner = Depends(get_task_runner)):
    """Cancel an in-flight sync."""
    cancelled = await runner.cancel_sync(provider_id)
    return {"cancelled": cancelled}
