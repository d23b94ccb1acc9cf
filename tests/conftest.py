"""Shared fixtures: in-memory database and catalog builders."""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from aggregator.db.models import Base, Destination, Provider, Region, UnifiedPackage
from aggregator.ingest.rate_limiter import RateLimiter
from aggregator.pricing.engine import compute_sell_price
from aggregator.registry.providers import ProviderSnapshot

GB = 1024 ** 3


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog(session_factory):
    """Builder for providers, locations and packages."""
    return CatalogBuilder(session_factory)


@pytest.fixture
def fast_limiter():
    async def no_sleep(seconds):
        return None

    return RateLimiter(sleep=no_sleep)


class CatalogBuilder:
    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._package_seq = 0

    async def _add(self, obj):
        async with self.session_factory() as db:
            async with db.begin():
                db.add(obj)
            await db.refresh(obj)
        return obj

    async def provider(self, slug, **fields) -> Provider:
        values = {
            "name": slug.title(),
            "enabled": True,
            "pricing_margin_percent": Decimal("15.00"),
            "min_margin_percent": Decimal("0.00"),
            "failover_priority": 100,
            "sync_interval_minutes": 60,
            "api_rate_limit_per_hour": 1000,
            "last_sync_at": datetime.utcnow(),
            "api_base_url": f"https://{slug}.example.com",
        }
        values.update(fields)
        return await self._add(Provider(slug=slug, **values))

    async def destination(self, country_code, name=None) -> Destination:
        name = name or country_code
        return await self._add(
            Destination(name=name, slug=name.lower(), country_code=country_code)
        )

    async def region(self, name, countries, code=None) -> Region:
        return await self._add(
            Region(name=name, slug=name.lower().replace(" ", "-"), code=code, countries=countries)
        )

    async def package(self, provider, destination=None, region=None, **fields) -> UnifiedPackage:
        self._package_seq += 1
        wholesale = Decimal(str(fields.pop("wholesale_cost", "10.00")))
        currency = fields.pop("currency", "USD")
        sell_price = fields.pop("sell_price", None)
        if sell_price is None:
            sell_price = compute_sell_price(wholesale, provider.pricing_margin_percent, currency)
        values = {
            "provider_package_id": f"{provider.slug}-{self._package_seq}",
            "title": f"Package {self._package_seq}",
            "destination_id": destination.id if destination else None,
            "region_id": region.id if region else None,
            "country_code": destination.country_code if destination else None,
            "location_status": "resolved" if (destination or region) else "unresolved",
            "data_amount": "1GB",
            "data_amount_bytes": GB,
            "is_unlimited": False,
            "validity_days": 7,
            "wholesale_cost": wholesale,
            "currency": currency,
            "sell_price": Decimal(str(sell_price)),
            "active": True,
        }
        values.update(fields)
        return await self._add(UnifiedPackage(provider_id=provider.id, **values))


@pytest.fixture
def make_snapshot():
    """Factory for ProviderSnapshot with sensible defaults."""
    return build_snapshot


def build_snapshot(**fields) -> ProviderSnapshot:
    values = {
        "id": 1,
        "name": "Provider",
        "slug": "provider",
        "enabled": True,
        "is_preferred": False,
        "pricing_margin_percent": Decimal("15"),
        "min_margin_percent": Decimal("0"),
        "failover_priority": 100,
        "sync_interval_minutes": 60,
        "api_rate_limit_per_hour": 1000,
        "last_sync_at": datetime.utcnow(),
        "api_base_url": "https://provider.example.com",
    }
    values.update(fields)
    return ProviderSnapshot(**values)
