"""Cross-provider price comparison and best price marking."""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from aggregator import metrics
from aggregator.compare.equivalence import EquivalenceKey, key_for
from aggregator.db.models import BestPriceMark, Destination, Provider, Region, UnifiedPackage
from aggregator.db.repository import CatalogRepository, PackageFilter
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import NotFoundError
from aggregator.normalize.locations import UNRESOLVED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComparisonCandidate:
    package_id: int
    provider_id: int
    sell_price: Decimal
    failover_priority: int
    updated_at: datetime

    @classmethod
    def from_package(cls, package: UnifiedPackage) -> "ComparisonCandidate":
        return cls(
            package_id=package.id,
            provider_id=package.provider_id,
            sell_price=Decimal(package.sell_price),
            failover_priority=package.provider.failover_priority,
            updated_at=package.updated_at,
        )


def select_winner(
    candidates: Sequence[ComparisonCandidate],
) -> tuple[ComparisonCandidate, Optional[Decimal]]:
    """
    Pick the best price in a group.

    Lowest sell price wins; ties go to the lower failover priority, then the
    most recently updated package, then the lowest package id.

    Returns:
        (winner, runner-up price minus winner price, or None for a single member)
    """
    if not candidates:
        raise ValueError("Cannot select a winner from an empty group")

    ordered = sorted(candidates, key=lambda c: c.package_id)
    ordered.sort(key=lambda c: c.updated_at, reverse=True)
    ordered.sort(key=lambda c: (c.sell_price, c.failover_priority))

    winner = ordered[0]
    delta = ordered[1].sell_price - winner.sell_price if len(ordered) > 1 else None
    return winner, delta


@dataclass
class ComparisonResult:
    """Outcome of one comparison run."""

    total_packages: int = 0
    best_price_packages: int = 0
    skipped_packages: int = 0  # active but without a usable equivalence key
    marks_removed: int = 0
    destination_id: Optional[int] = None
    region_id: Optional[int] = None
    duration_seconds: float = 0.0


@dataclass
class ComparisonStatistics:
    total_packages: int = 0
    best_price_packages: int = 0
    unresolved_packages: int = 0
    group_count: int = 0
    packages_by_provider: dict[str, int] = field(default_factory=dict)
    best_price_by_provider: dict[str, int] = field(default_factory=dict)


class PriceComparisonEngine:
    """Group equivalent packages across providers and mark the cheapest."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def run_comparison(self) -> ComparisonResult:
        """Compare every active package from enabled providers."""
        return await self._run()

    async def run_for_destination(self, destination_id: int) -> ComparisonResult:
        """Compare only the packages of one destination."""
        async with self.session_factory() as db:
            if await db.get(Destination, destination_id) is None:
                raise NotFoundError(f"Destination {destination_id} not found")
        return await self._run(destination_id=destination_id)

    async def run_for_region(self, region_id: int) -> ComparisonResult:
        """Compare only the packages of one region."""
        async with self.session_factory() as db:
            if await db.get(Region, region_id) is None:
                raise NotFoundError(f"Region {region_id} not found")
        return await self._run(region_id=region_id)

    async def _run(
        self,
        destination_id: Optional[int] = None,
        region_id: Optional[int] = None,
    ) -> ComparisonResult:
        start = time.monotonic()
        result = ComparisonResult(destination_id=destination_id, region_id=region_id)
        scoped = destination_id is not None or region_id is not None

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    repo = CatalogRepository(db)
                    packages = await repo.list_active_packages(
                        PackageFilter(destination_id=destination_id, region_id=region_id)
                    )

                    groups: dict[EquivalenceKey, list[ComparisonCandidate]] = defaultdict(list)
                    for package in packages:
                        key = key_for(package)
                        if key is None:
                            result.skipped_packages += 1
                            continue
                        groups[key].append(ComparisonCandidate.from_package(package))
                        result.total_packages += 1

                    # Clear previous winners inside the scope, including
                    # packages of providers that have since been disabled
                    reset = update(UnifiedPackage).where(UnifiedPackage.is_best_price.is_(True))
                    if destination_id is not None:
                        reset = reset.where(UnifiedPackage.destination_id == destination_id)
                    elif region_id is not None:
                        reset = reset.where(UnifiedPackage.region_id == region_id)
                    await db.execute(
                        reset.values(is_best_price=False).execution_options(synchronize_session=False)
                    )

                    now = datetime.utcnow()
                    marks: list[BestPriceMark] = []
                    winner_ids: list[int] = []
                    for key, candidates in groups.items():
                        winner, delta = select_winner(candidates)
                        winner_ids.append(winner.package_id)
                        marks.append(
                            BestPriceMark(
                                group_key=key.as_string(),
                                package_id=winner.package_id,
                                destination_id=key.destination_id,
                                region_id=key.region_id,
                                member_count=len(candidates),
                                runner_up_delta=delta,
                                computed_at=now,
                            )
                        )

                    if winner_ids:
                        await db.execute(
                            update(UnifiedPackage)
                            .where(UnifiedPackage.id.in_(winner_ids))
                            .values(is_best_price=True)
                            .execution_options(synchronize_session=False)
                        )
                    result.marks_removed = await repo.replace_best_price_marks(
                        marks, destination_id=destination_id, region_id=region_id
                    )
                    result.best_price_packages = len(winner_ids)
        except Exception:
            metrics.record_comparison_run(success=False)
            logger.exception("Price comparison failed")
            raise

        result.duration_seconds = time.monotonic() - start
        metrics.record_comparison_run(
            success=True, groups=None if scoped else result.best_price_packages
        )
        logger.info(
            f"Price comparison complete: {result.total_packages} packages, "
            f"{result.best_price_packages} best prices, {result.skipped_packages} skipped "
            f"({result.duration_seconds:.2f}s)"
        )
        return result

    async def get_statistics(self) -> ComparisonStatistics:
        """Package and best price counts for the admin dashboard."""
        stats = ComparisonStatistics()
        async with self.session_factory() as db:
            by_provider = await db.execute(
                select(Provider.slug, func.count(UnifiedPackage.id))
                .join(UnifiedPackage, UnifiedPackage.provider_id == Provider.id)
                .where(UnifiedPackage.active.is_(True))
                .group_by(Provider.slug)
            )
            stats.packages_by_provider = {slug: count for slug, count in by_provider.all()}

            best_by_provider = await db.execute(
                select(Provider.slug, func.count(UnifiedPackage.id))
                .join(UnifiedPackage, UnifiedPackage.provider_id == Provider.id)
                .where(UnifiedPackage.active.is_(True), UnifiedPackage.is_best_price.is_(True))
                .group_by(Provider.slug)
            )
            stats.best_price_by_provider = {slug: count for slug, count in best_by_provider.all()}

            stats.unresolved_packages = (
                await db.execute(
                    select(func.count(UnifiedPackage.id)).where(
                        UnifiedPackage.active.is_(True),
                        UnifiedPackage.location_status == UNRESOLVED,
                    )
                )
            ).scalar_one()
            stats.group_count = (await db.execute(select(func.count()).select_from(BestPriceMark))).scalar_one()

        stats.total_packages = sum(stats.packages_by_provider.values())
        stats.best_price_packages = sum(stats.best_price_by_provider.values())
        return stats
