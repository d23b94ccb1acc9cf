"""Repository operations over the catalog tables.

Every method runs inside the caller's session and transaction; callers wrap
them in ``async with session.begin()`` to control atomicity.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from aggregator.db.models import BestPriceMark, PriceBracket, Provider, UnifiedPackage
from aggregator.normalize.locations import RESOLVED

if TYPE_CHECKING:
    from aggregator.brackets.generator import BracketPlan
    from aggregator.normalize.processor import UnifiedPackageData

logger = logging.getLogger(__name__)


@dataclass
class PackageFilter:
    """Selection criteria for list_active_packages."""

    provider_id: Optional[int] = None
    currency: Optional[str] = None
    destination_id: Optional[int] = None
    region_id: Optional[int] = None
    enabled_providers_only: bool = True
    resolved_only: bool = True


@dataclass
class BracketReplacement:
    created: int = 0
    reused: int = 0
    deactivated: int = 0
    brackets: list[PriceBracket] = field(default_factory=list)


class CatalogRepository:
    """Persistence calls used by sync, comparison and bracket generation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert_package(
        self,
        provider_id: int,
        data: "UnifiedPackageData",
        sell_price: Decimal,
    ) -> tuple[UnifiedPackage, bool]:
        """
        Insert or update a package keyed by (provider_id, provider_package_id).

        A package with an admin override keeps the override as its sell price.

        Returns:
            (package, created)
        """
        result = await self.db.execute(
            select(UnifiedPackage).where(
                UnifiedPackage.provider_id == provider_id,
                UnifiedPackage.provider_package_id == data.provider_package_id,
            )
        )
        package = result.scalar_one_or_none()
        created = package is None
        if created:
            package = UnifiedPackage(
                provider_id=provider_id,
                provider_package_id=data.provider_package_id,
            )
            self.db.add(package)

        location = data.location
        package.destination_id = location.destination_id
        package.region_id = location.region_id
        package.country_code = location.country_code
        package.coverage = list(location.coverage)
        package.location_status = location.status
        package.package_type = data.package_type
        package.title = data.title
        package.data_amount = data.data_amount
        package.data_amount_bytes = data.data_amount_bytes
        package.is_unlimited = data.is_unlimited
        package.validity_days = data.validity_days
        package.voice_minutes = data.voice_minutes
        package.sms_count = data.sms_count
        package.wholesale_cost = data.wholesale_cost
        package.currency = data.currency
        package.sell_price = package.price_override if package.price_override is not None else sell_price
        package.active = True
        package.updated_at = datetime.utcnow()

        await self.db.flush()
        return package, created

    async def deactivate_missing_packages(self, provider_id: int, seen_ids: Iterable[str]) -> int:
        """Mark a provider's active packages inactive when they were not in the latest catalog."""
        seen = list(set(seen_ids))
        result = await self.db.execute(
            update(UnifiedPackage)
            .where(
                UnifiedPackage.provider_id == provider_id,
                UnifiedPackage.active.is_(True),
                UnifiedPackage.provider_package_id.not_in(seen),
            )
            .values(active=False, is_best_price=False, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def list_active_packages(self, filter: Optional[PackageFilter] = None) -> Sequence[UnifiedPackage]:
        """Active packages matching the filter, with their provider loaded."""
        filter = filter or PackageFilter()
        query = (
            select(UnifiedPackage)
            .join(Provider, Provider.id == UnifiedPackage.provider_id)
            .where(UnifiedPackage.active.is_(True))
            .options(selectinload(UnifiedPackage.provider))
            .order_by(UnifiedPackage.id)
        )
        if filter.enabled_providers_only:
            query = query.where(Provider.enabled.is_(True))
        if filter.resolved_only:
            query = query.where(UnifiedPackage.location_status == RESOLVED)
        if filter.provider_id is not None:
            query = query.where(UnifiedPackage.provider_id == filter.provider_id)
        if filter.currency:
            query = query.where(UnifiedPackage.currency == filter.currency.upper())
        if filter.destination_id is not None:
            query = query.where(UnifiedPackage.destination_id == filter.destination_id)
        if filter.region_id is not None:
            query = query.where(UnifiedPackage.region_id == filter.region_id)

        result = await self.db.execute(query)
        return result.scalars().all()

    async def upsert_provider(self, slug: str, **fields: Any) -> Provider:
        """Insert or update a provider row keyed by slug."""
        result = await self.db.execute(select(Provider).where(Provider.slug == slug))
        provider = result.scalar_one_or_none()
        if provider is None:
            provider = Provider(slug=slug, name=fields.pop("name", slug))
            self.db.add(provider)
        for key, value in fields.items():
            setattr(provider, key, value)
        await self.db.flush()
        return provider

    async def replace_best_price_marks(
        self,
        marks: Sequence[BestPriceMark],
        destination_id: Optional[int] = None,
        region_id: Optional[int] = None,
    ) -> int:
        """
        Overwrite best price marks for a scope.

        Without a scope every existing mark is replaced; with a destination or
        region only marks inside that location are touched.

        Returns:
            Number of stale marks removed
        """
        new_keys = {mark.group_key for mark in marks}
        query = select(BestPriceMark)
        if destination_id is not None:
            query = query.where(BestPriceMark.destination_id == destination_id)
        elif region_id is not None:
            query = query.where(BestPriceMark.region_id == region_id)
        existing = {mark.group_key: mark for mark in (await self.db.execute(query)).scalars().all()}

        stale = [key for key in existing if key not in new_keys]
        if stale:
            await self.db.execute(delete(BestPriceMark).where(BestPriceMark.group_key.in_(stale)))

        for mark in marks:
            current = existing.get(mark.group_key) or await self.db.get(BestPriceMark, mark.group_key)
            if current is None:
                self.db.add(mark)
                continue
            current.package_id = mark.package_id
            current.destination_id = mark.destination_id
            current.region_id = mark.region_id
            current.member_count = mark.member_count
            current.runner_up_delta = mark.runner_up_delta
            current.computed_at = mark.computed_at

        await self.db.flush()
        return len(stale)

    async def replace_brackets_for_currency(
        self,
        currency: str,
        plans: Sequence["BracketPlan"],
    ) -> BracketReplacement:
        """
        Make ``plans`` the only active bracket set for a currency.

        Rows with a matching product_id are reactivated with their submission
        history intact; every other active row for the currency is deactivated.
        """
        outcome = BracketReplacement()
        result = await self.db.execute(select(PriceBracket).where(PriceBracket.currency == currency))
        by_product = {row.product_id: row for row in result.scalars().all()}
        wanted = {plan.product_id for plan in plans}

        for product_id, row in by_product.items():
            if row.is_active and product_id not in wanted:
                row.is_active = False
                outcome.deactivated += 1

        for plan in plans:
            row = by_product.get(plan.product_id)
            if row is None:
                row = PriceBracket(
                    product_id=plan.product_id,
                    currency=currency,
                    android_status="pending",
                    apple_status="pending",
                )
                self.db.add(row)
                outcome.created += 1
            else:
                outcome.reused += 1
            row.step_size = plan.step_size
            row.bucket_index = plan.bucket_index
            row.min_price = plan.min_price
            row.max_price = plan.max_price
            row.is_active = True
            outcome.brackets.append(row)

        await self.db.flush()
        return outcome
