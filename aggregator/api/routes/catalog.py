"""Catalog, comparison and failover routes."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aggregator.api.deps import get_database, get_task_runner
from aggregator.db.repository import CatalogRepository, PackageFilter
from aggregator.worker.tasks import TaskRunner

router = APIRouter(prefix="/api/catalog", tags=["catalog"])


class PackageResponse(BaseModel):
    id: int
    provider_id: int
    provider_package_id: str
    title: str
    destination_id: Optional[int]
    region_id: Optional[int]
    country_code: Optional[str]
    package_type: str
    data_amount: Optional[str]
    data_amount_bytes: Optional[int]
    is_unlimited: bool
    validity_days: int
    voice_minutes: int
    sms_count: int
    wholesale_cost: Decimal
    currency: str
    sell_price: Decimal
    price_override: Optional[Decimal]
    is_best_price: bool
    is_enabled: bool
    manual_override: bool
    updated_at: datetime

    class Config:
        from_attributes = True


class ComparisonResultResponse(BaseModel):
    total_packages: int
    best_price_packages: int
    skipped_packages: int
    marks_removed: int
    destination_id: Optional[int]
    region_id: Optional[int]
    duration_seconds: float

    class Config:
        from_attributes = True


class ComparisonStatisticsResponse(BaseModel):
    total_packages: int
    best_price_packages: int
    unresolved_packages: int
    group_count: int
    packages_by_provider: Dict[str, int]
    best_price_by_provider: Dict[str, int]

    class Config:
        from_attributes = True


class FailoverCandidateResponse(BaseModel):
    provider_id: int
    provider_slug: str
    package_id: Optional[int]
    sell_price: Optional[Decimal]
    wholesale_cost: Optional[Decimal]
    margin_percent: Optional[Decimal]
    stale: bool


class SelectionResultResponse(BaseModel):
    mode: str
    packages_enabled: int
    packages_disabled: int
    fallback_enabled: int
    manual_overrides: int

    class Config:
        from_attributes = True


class SelectionStatisticsResponse(BaseModel):
    mode: str
    total_packages: int
    enabled_packages: int
    disabled_packages: int
    manual_overrides: int
    best_price_packages: int

    class Config:
        from_attributes = True


class VisibilityRequest(BaseModel):
    is_enabled: Optional[bool] = Field(
        None, description="Pin the package visible or hidden; null returns it to auto selection"
    )


class PriceOverrideRequest(BaseModel):
    price: Optional[Decimal] = Field(None, description="New sell price; null clears the override")


@router.get("/packages", response_model=List[PackageResponse])
async def list_packages(
    provider_id: Optional[int] = None,
    currency: Optional[str] = None,
    destination_id: Optional[int] = None,
    region_id: Optional[int] = None,
    db: AsyncSession = Depends(get_database),
):
    """List active packages from enabled providers."""
    repo = CatalogRepository(db)
    return await repo.list_active_packages(
        PackageFilter(
            provider_id=provider_id,
            currency=currency.upper() if currency else None,
            destination_id=destination_id,
            region_id=region_id,
        )
    )


@router.post("/comparison", response_model=ComparisonResultResponse)
async def run_comparison(
    destination_id: Optional[int] = None,
    region_id: Optional[int] = None,
    runner: TaskRunner = Depends(get_task_runner),
):
    """
    Recompute best-price marks.

    Pass destination_id or region_id to limit the run to one location.
    Returns 409 if a comparison is already running.
    """
    return await runner.run_comparison(destination_id=destination_id, region_id=region_id)


@router.get("/comparison/stats", response_model=ComparisonStatisticsResponse)
async def comparison_statistics(runner: TaskRunner = Depends(get_task_runner)):
    """Best-price coverage per provider."""
    return await runner.comparison.get_statistics()


@router.get("/packages/{package_id}/failover", response_model=List[FailoverCandidateResponse])
async def failover_order(package_id: int, runner: TaskRunner = Depends(get_task_runner)):
    """Providers to try, in order, when the package's own provider fails."""
    candidates = await runner.provider_order_for_package(package_id)
    return [
        FailoverCandidateResponse(
            provider_id=c.provider.id,
            provider_slug=c.provider.slug,
            package_id=c.package_id,
            sell_price=c.sell_price,
            wholesale_cost=c.wholesale_cost,
            margin_percent=c.margin_percent,
            stale=c.stale,
        )
        for c in candidates
    ]


@router.put("/packages/{package_id}/override", response_model=PackageResponse)
async def set_price_override(
    package_id: int,
    data: PriceOverrideRequest,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Set or clear an admin price override."""
    return await runner.set_package_override(package_id, data.price)


@router.post("/selection", response_model=SelectionResultResponse)
async def run_selection(runner: TaskRunner = Depends(get_task_runner)):
    """
    Re-apply storefront selection to the current best-price marks.

    Returns 409 if a comparison is running.
    """
    return await runner.run_selection()


@router.get("/selection/stats", response_model=SelectionStatisticsResponse)
async def selection_statistics(runner: TaskRunner = Depends(get_task_runner)):
    return await runner.selection.get_statistics()


@router.put("/packages/{package_id}/visibility", response_model=PackageResponse)
async def set_visibility(
    package_id: int,
    data: VisibilityRequest,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Pin a package visible or hidden in the storefront, or release the pin."""
    return await runner.set_package_visibility(package_id, data.is_enabled)
