"""Provider ordering for fulfillment failover."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from aggregator.compare.equivalence import EquivalenceKey, key_for
from aggregator.db.models import Provider, UnifiedPackage
from aggregator.db.repository import CatalogRepository, PackageFilter
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import NotFoundError, ServiceUnavailableError, ValidationError
from aggregator.pricing.engine import effective_margin_percent, meets_margin_floor
from aggregator.registry.providers import ProviderSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailoverCandidate:
    """A provider that can fulfil an offer, with its matching package if any."""

    provider: ProviderSnapshot
    package_id: Optional[int] = None
    sell_price: Optional[Decimal] = None
    wholesale_cost: Optional[Decimal] = None
    stale: bool = False

    @property
    def margin_percent(self) -> Optional[Decimal]:
        if self.wholesale_cost is None or self.sell_price is None:
            return None
        return effective_margin_percent(self.wholesale_cost, self.sell_price)

    @classmethod
    def from_package(cls, package: UnifiedPackage) -> "FailoverCandidate":
        return cls(
            provider=ProviderSnapshot.from_model(package.provider),
            package_id=package.id,
            sell_price=Decimal(package.sell_price),
            wholesale_cost=Decimal(package.wholesale_cost),
        )


def order_candidates(
    candidates: Iterable[FailoverCandidate],
    now: Optional[datetime] = None,
    staleness_multiplier: Optional[float] = None,
) -> list[FailoverCandidate]:
    """
    Order candidates for failover.

    Disabled providers and candidates below their provider's margin floor
    are dropped. The rest are sorted by failover priority (then wholesale
    cost, then provider id) and stale providers are moved to the end.
    Each provider appears at most once, with its cheapest package.
    """
    now = now or datetime.utcnow()
    eligible: list[FailoverCandidate] = []
    for candidate in candidates:
        provider = candidate.provider
        if not provider.enabled:
            continue
        if candidate.package_id is not None and not meets_margin_floor(
            candidate.wholesale_cost, candidate.sell_price, provider.min_margin_percent
        ):
            logger.debug(
                f"Excluding {provider.slug} package {candidate.package_id}: "
                f"margin {candidate.margin_percent:.2f}% below {provider.min_margin_percent}% floor"
            )
            continue
        eligible.append(replace(candidate, stale=provider.is_stale(now, staleness_multiplier)))

    eligible.sort(
        key=lambda c: (
            c.provider.failover_priority,
            c.wholesale_cost if c.wholesale_cost is not None else Decimal(0),
            c.provider.id,
        )
    )

    seen: set[int] = set()
    fresh: list[FailoverCandidate] = []
    stale: list[FailoverCandidate] = []
    for candidate in eligible:
        if candidate.provider.id in seen:
            continue
        seen.add(candidate.provider.id)
        (stale if candidate.stale else fresh).append(candidate)
    return fresh + stale


class FailoverSelector:
    """Decide which providers to try, in order, for an offer."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        staleness_multiplier: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.staleness_multiplier = staleness_multiplier

    async def select_provider_order(
        self,
        key: EquivalenceKey,
        exclude_provider_ids: Iterable[int] = (),
        now: Optional[datetime] = None,
    ) -> list[FailoverCandidate]:
        """
        Ordered providers able to fulfil an equivalence group.

        Falls back to enabled preferred providers, regardless of staleness and
        margin, when no ranked provider qualifies. Returns an empty list when
        nothing is available.
        """
        excluded = set(exclude_provider_ids)
        async with self.session_factory() as db:
            repo = CatalogRepository(db)
            packages = await repo.list_active_packages(
                PackageFilter(
                    destination_id=key.destination_id,
                    region_id=key.region_id,
                    enabled_providers_only=False,
                )
            )
            members = [
                p for p in packages
                if p.provider_id not in excluded and key_for(p) == key
            ]
            candidates = [FailoverCandidate.from_package(p) for p in members]

            ordered = order_candidates(candidates, now, self.staleness_multiplier)
            if ordered:
                return ordered

            result = await db.execute(
                select(Provider)
                .where(Provider.enabled.is_(True), Provider.is_preferred.is_(True))
                .order_by(Provider.failover_priority, Provider.id)
            )
            fallback: list[FailoverCandidate] = []
            for provider in result.scalars().all():
                if provider.id in excluded:
                    continue
                own = sorted(
                    (c for c in candidates if c.provider.id == provider.id),
                    key=lambda c: c.wholesale_cost,
                )
                snapshot = ProviderSnapshot.from_model(provider)
                stale = snapshot.is_stale(now, self.staleness_multiplier)
                if own:
                    fallback.append(replace(own[0], provider=snapshot, stale=stale))
                else:
                    fallback.append(FailoverCandidate(provider=snapshot, stale=stale))

        if fallback:
            logger.warning(
                f"No ranked provider for {key.as_string()}; falling back to preferred: "
                f"{', '.join(c.provider.slug for c in fallback)}"
            )
        return fallback

    async def require_provider_order(
        self,
        key: EquivalenceKey,
        exclude_provider_ids: Iterable[int] = (),
        now: Optional[datetime] = None,
    ) -> list[FailoverCandidate]:
        """Like select_provider_order, but raises when nothing is available."""
        ordered = await self.select_provider_order(key, exclude_provider_ids, now)
        if not ordered:
            raise ServiceUnavailableError(f"No provider available for {key.as_string()}")
        return ordered

    async def select_for_package(
        self,
        package_id: int,
        exclude_failed: bool = True,
        now: Optional[datetime] = None,
    ) -> list[FailoverCandidate]:
        """
        Failover order for the group of an existing package.

        Args:
            package_id: Package the customer ordered
            exclude_failed: Leave out the package's own provider (it just failed)

        Raises:
            NotFoundError: If the package does not exist
            ValidationError: If the package has no resolved location
            ServiceUnavailableError: If no provider is available
        """
        async with self.session_factory() as db:
            package = await db.get(UnifiedPackage, package_id)
            if package is None:
                raise NotFoundError(f"Package {package_id} not found")
            key = key_for(package)
            provider_id = package.provider_id
        if key is None:
            raise ValidationError(f"Package {package_id} has no resolved location")

        excluded = (provider_id,) if exclude_failed else ()
        return await self.require_provider_order(key, excluded, now)
