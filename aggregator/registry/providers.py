"""Provider configuration registry."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aggregator.config import settings
from aggregator.db.models import Provider
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Columns an admin or seed script may set through upsert_provider
PROVIDER_FIELDS = {
    "name",
    "api_base_url",
    "enabled",
    "is_preferred",
    "pricing_margin_percent",
    "min_margin_percent",
    "failover_priority",
    "sync_interval_minutes",
    "api_rate_limit_per_hour",
}


@dataclass(frozen=True)
class ProviderSnapshot:
    """Immutable copy of a provider's configuration.

    Sync runs and failover queries work on a snapshot taken when they start,
    so an admin edit mid-run only affects the next run.
    """

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
    last_sync_at: Optional[datetime] = None
    api_base_url: Optional[str] = None

    @classmethod
    def from_model(cls, provider: Provider) -> "ProviderSnapshot":
        return cls(
            id=provider.id,
            name=provider.name,
            slug=provider.slug,
            enabled=provider.enabled,
            is_preferred=provider.is_preferred,
            pricing_margin_percent=Decimal(provider.pricing_margin_percent),
            min_margin_percent=Decimal(provider.min_margin_percent),
            failover_priority=provider.failover_priority,
            sync_interval_minutes=provider.sync_interval_minutes,
            api_rate_limit_per_hour=provider.api_rate_limit_per_hour,
            last_sync_at=provider.last_sync_at,
            api_base_url=provider.api_base_url,
        )

    def is_stale(self, now: Optional[datetime] = None, multiplier: Optional[float] = None) -> bool:
        """True if the last sync is older than ``multiplier`` sync intervals (or never happened)."""
        if self.last_sync_at is None:
            return True
        now = now or datetime.utcnow()
        multiplier = settings.staleness_multiplier if multiplier is None else multiplier
        return now - self.last_sync_at > timedelta(minutes=self.sync_interval_minutes * multiplier)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """True if a scheduled sync should run now."""
        if self.last_sync_at is None:
            return True
        now = now or datetime.utcnow()
        return now >= self.last_sync_at + timedelta(minutes=self.sync_interval_minutes)


def _percent(value: Any, field_name: str) -> Decimal:
    try:
        percent = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not percent.is_finite() or percent < 0:
        raise ValidationError(f"{field_name} must be >= 0, got {value}")
    return percent


class ProviderRegistry:
    """Read and update provider configuration."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def _load(self, db: AsyncSession, provider_id: int) -> Provider:
        provider = await db.get(Provider, provider_id)
        if provider is None:
            raise NotFoundError(f"Provider {provider_id} not found")
        return provider

    async def get(self, provider_id: int) -> ProviderSnapshot:
        async with self.session_factory() as db:
            return ProviderSnapshot.from_model(await self._load(db, provider_id))

    async def get_by_slug(self, slug: str) -> ProviderSnapshot:
        async with self.session_factory() as db:
            result = await db.execute(select(Provider).where(Provider.slug == slug))
            provider = result.scalar_one_or_none()
            if provider is None:
                raise NotFoundError(f"Provider '{slug}' not found")
            return ProviderSnapshot.from_model(provider)

    async def list_all(self) -> list[ProviderSnapshot]:
        async with self.session_factory() as db:
            result = await db.execute(select(Provider).order_by(Provider.failover_priority, Provider.id))
            return [ProviderSnapshot.from_model(p) for p in result.scalars().all()]

    async def list_enabled(self) -> list[ProviderSnapshot]:
        """Providers that take part in sync, comparison and failover."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Provider)
                .where(Provider.enabled.is_(True))
                .order_by(Provider.failover_priority, Provider.id)
            )
            return [ProviderSnapshot.from_model(p) for p in result.scalars().all()]

    async def upsert_provider(self, slug: str, **fields: Any) -> ProviderSnapshot:
        """
        Create or update a provider keyed by slug.

        Args:
            slug: Provider slug
            **fields: Any of PROVIDER_FIELDS

        Returns:
            Snapshot of the stored provider

        Raises:
            ValidationError: On unknown fields or invalid margins
        """
        unknown = set(fields) - PROVIDER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown provider fields: {', '.join(sorted(unknown))}")
        for key in ("pricing_margin_percent", "min_margin_percent"):
            if key in fields:
                fields[key] = _percent(fields[key], key)

        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(select(Provider).where(Provider.slug == slug))
                provider = result.scalar_one_or_none()
                if provider is None:
                    provider = Provider(slug=slug, name=fields.pop("name", slug))
                    db.add(provider)
                    logger.info(f"Registered provider {slug}")
                for key, value in fields.items():
                    setattr(provider, key, value)
                await db.flush()
                return ProviderSnapshot.from_model(provider)

    async def set_enabled(self, provider_id: int, enabled: bool) -> ProviderSnapshot:
        async with self.session_factory() as db:
            async with db.begin():
                provider = await self._load(db, provider_id)
                provider.enabled = enabled
                logger.info(f"Provider {provider.slug} {'enabled' if enabled else 'disabled'}")
            return ProviderSnapshot.from_model(provider)

    async def update_margin(
        self,
        provider_id: int,
        pricing_margin_percent: Any,
        min_margin_percent: Any = None,
    ) -> ProviderSnapshot:
        """
        Update a provider's margin and, optionally, its floor.

        Raises:
            ValidationError: If a value is negative or the margin is below the floor
            NotFoundError: If the provider does not exist
        """
        margin = _percent(pricing_margin_percent, "pricing_margin_percent")
        floor = None if min_margin_percent is None else _percent(min_margin_percent, "min_margin_percent")

        async with self.session_factory() as db:
            async with db.begin():
                provider = await self._load(db, provider_id)
                effective_floor = floor if floor is not None else Decimal(provider.min_margin_percent)
                if margin < effective_floor:
                    raise ValidationError(
                        f"Margin {margin}% is below the {effective_floor}% floor for {provider.slug}"
                    )
                provider.pricing_margin_percent = margin
                if floor is not None:
                    provider.min_margin_percent = floor
                logger.info(f"Provider {provider.slug} margin set to {margin}% (floor {effective_floor}%)")
            return ProviderSnapshot.from_model(provider)

    async def mark_synced(self, provider_id: int, at: Optional[datetime] = None) -> None:
        """Advance last_sync_at after a completed sync."""
        async with self.session_factory() as db:
            async with db.begin():
                provider = await self._load(db, provider_id)
                provider.last_sync_at = at or datetime.utcnow()
