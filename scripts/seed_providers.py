#!/usr/bin/env python3
"""
Seed providers, destinations, regions and country code mappings.

Safe to run repeatedly: providers are upserted by slug, and locations and
mappings are only inserted when missing. Providers are created disabled
unless they already exist; enable them from the admin API once their API
tokens are configured.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from aggregator.db.models import Base, Destination, Region
from aggregator.db.session import AsyncSessionLocal, engine
from aggregator.ingest.base import PROVIDER_AIRALO, PROVIDER_ESIM_ACCESS, PROVIDER_ESIM_GO
from aggregator.normalize.country_codes import COUNTRIES, seed_country_code_mappings
from aggregator.normalize.locations import slugify
from aggregator.registry.providers import ProviderRegistry

PROVIDERS = [
    {
        "slug": PROVIDER_AIRALO,
        "name": "Airalo",
        "api_base_url": "https://partners-api.airalo.com",
        "failover_priority": 10,
        "api_rate_limit_per_hour": 1000,
        "is_preferred": True,
    },
    {
        "slug": PROVIDER_ESIM_ACCESS,
        "name": "eSIM Access",
        "api_base_url": "https://api.esimaccess.com",
        "failover_priority": 20,
        "api_rate_limit_per_hour": 600,
    },
    {
        "slug": PROVIDER_ESIM_GO,
        "name": "eSIM Go",
        "api_base_url": "https://api.esim-go.com",
        "failover_priority": 30,
        "api_rate_limit_per_hour": 600,
    },
]

REGIONS = [
    {
        "name": "Europe",
        "code": "EU",
        "countries": [
            "AL", "AT", "BA", "BE", "BG", "CH", "CY", "CZ", "DE", "DK", "EE", "ES", "FI",
            "FR", "GB", "GR", "HR", "HU", "IE", "IS", "IT", "LT", "LU", "LV", "ME", "MK",
            "MT", "NL", "NO", "PL", "PT", "RO", "RS", "SE", "SI", "SK", "UA",
        ],
    },
    {
        "name": "Asia",
        "code": "AS",
        "countries": [
            "CN", "HK", "ID", "IN", "JP", "KH", "KR", "LA", "MO", "MY", "PH", "SG", "TH", "TW", "VN",
        ],
    },
    {
        "name": "North America",
        "code": "NA",
        "countries": ["CA", "MX", "US"],
    },
    {
        "name": "Middle East",
        "code": "MIDEAST",
        "countries": ["AE", "BH", "IL", "JO", "KW", "OM", "QA", "SA", "TR"],
    },
    {
        "name": "Latin America",
        "code": "LATAM",
        "countries": ["AR", "BR", "CL", "CO", "CR", "EC", "MX", "PA", "PE", "UY"],
    },
]


async def seed_providers(registry: ProviderRegistry) -> None:
    existing = {p.slug for p in await registry.list_all()}
    for entry in PROVIDERS:
        fields = dict(entry)
        slug = fields.pop("slug")
        if slug in existing:
            # Keep admin-tuned margins and priorities
            await registry.upsert_provider(slug, api_base_url=fields["api_base_url"])
            print(f"  = {slug} (exists, base URL refreshed)")
        else:
            await registry.upsert_provider(slug, **fields)
            print(f"  + {slug}")


async def seed_locations() -> None:
    async with AsyncSessionLocal() as db:
        async with db.begin():
            result = await db.execute(select(Destination.country_code))
            have_destinations = set(result.scalars().all())
            added = 0
            for iso2, _iso3, name in COUNTRIES:
                if iso2 in have_destinations:
                    continue
                db.add(Destination(name=name, slug=slugify(name), country_code=iso2))
                added += 1
            print(f"  destinations: {added} added")

            result = await db.execute(select(Region.slug))
            have_regions = set(result.scalars().all())
            added = 0
            for entry in REGIONS:
                slug = slugify(entry["name"])
                if slug in have_regions:
                    continue
                db.add(Region(name=entry["name"], slug=slug, code=entry["code"], countries=entry["countries"]))
                added += 1
            print(f"  regions: {added} added")

            inserted = await seed_country_code_mappings(db)
            print(f"  country code mappings: {inserted} added")


async def main() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    print("Seeding providers...")
    await seed_providers(ProviderRegistry(AsyncSessionLocal))
    print("Seeding locations...")
    await seed_locations()
    await engine.dispose()
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())
