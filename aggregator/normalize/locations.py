"""Resolve provider-native country and region identifiers to catalog locations."""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aggregator.db.models import CountryCodeMapping, Destination, Region

logger = logging.getLogger(__name__)

RESOLVED = "resolved"
UNRESOLVED = "unresolved"


def slugify(value: str) -> str:
    """Lowercase, dash-separated form used for country name lookups."""
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")


@dataclass(frozen=True)
class RegionRef:
    id: int
    slug: str
    code: Optional[str]
    countries: frozenset[str]


@dataclass(frozen=True)
class ResolvedLocation:
    """Outcome of location resolution for one offer."""

    status: str
    destination_id: Optional[int] = None
    region_id: Optional[int] = None
    country_code: Optional[str] = None
    coverage: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_resolved(self) -> bool:
        return self.status == RESOLVED


class LocationResolver:
    """In-memory view of destinations, regions and the code mapping table.

    Built once per sync so that normalization does not hit the database per
    offer. Lookups are case-insensitive.
    """

    def __init__(
        self,
        destinations: dict[str, int],
        regions: Iterable[RegionRef] = (),
        mappings: Optional[dict[str, str]] = None,
    ):
        self.destinations = {code.upper(): dest_id for code, dest_id in destinations.items()}
        self.regions = sorted(regions, key=lambda r: r.id)
        self.mappings = {key.lower(): value.upper() for key, value in (mappings or {}).items()}

    @classmethod
    async def load(cls, session: AsyncSession) -> "LocationResolver":
        """Build a resolver from the destination, region and mapping tables."""
        dest_rows = await session.execute(
            select(Destination.country_code, Destination.id).where(Destination.active.is_(True))
        )
        region_rows = await session.execute(select(Region).where(Region.active.is_(True)))
        mapping_rows = await session.execute(
            select(CountryCodeMapping.external_code, CountryCodeMapping.internal_code)
        )

        regions = [
            RegionRef(
                id=region.id,
                slug=region.slug,
                code=region.code,
                countries=frozenset(c.upper() for c in (region.countries or [])),
            )
            for region in region_rows.scalars().all()
        ]
        resolver = cls(
            destinations={code: dest_id for code, dest_id in dest_rows.all()},
            regions=regions,
            mappings={external: internal for external, internal in mapping_rows.all()},
        )
        logger.debug(
            f"Loaded location resolver: {len(resolver.destinations)} destinations, "
            f"{len(resolver.regions)} regions, {len(resolver.mappings)} mappings"
        )
        return resolver

    def to_internal_code(self, code: Optional[str]) -> Optional[str]:
        """
        Convert an external country identifier to the internal 2-letter code.

        Accepts ISO2 codes directly; ISO3 codes, country names and slugs go
        through the mapping table.
        """
        if not code:
            return None
        value = str(code).strip()
        if len(value) == 2 and value.isalpha():
            return value.upper()
        mapped = self.mappings.get(value.lower())
        if mapped:
            return mapped
        return self.mappings.get(slugify(value))

    def find_region(self, hint: Optional[str]) -> Optional[RegionRef]:
        """Find a region by slug or code."""
        if not hint:
            return None
        needle = hint.strip().lower()
        for region in self.regions:
            if region.slug.lower() == needle or (region.code and region.code.lower() == needle):
                return region
        return None

    def best_region_for(self, countries: Iterable[str]) -> Optional[RegionRef]:
        """Region whose member list overlaps the coverage most (lowest id on ties)."""
        coverage = set(countries)
        best: Optional[RegionRef] = None
        best_overlap = 0
        for region in self.regions:
            overlap = len(region.countries & coverage)
            if overlap > best_overlap:
                best, best_overlap = region, overlap
        return best

    def resolve(
        self,
        country_codes: Iterable[Optional[str]],
        region_hint: Optional[str] = None,
    ) -> ResolvedLocation:
        """
        Resolve an offer's coverage to a destination or region.

        Args:
            country_codes: Provider-native country identifiers covered by the offer
            region_hint: Provider-native region slug or code, if the offer declares one

        Returns:
            ResolvedLocation, with status "unresolved" when nothing matched
        """
        coverage: list[str] = []
        for raw in country_codes:
            internal = self.to_internal_code(raw)
            if internal and internal not in coverage:
                coverage.append(internal)

        region = self.find_region(region_hint)
        if region:
            return ResolvedLocation(RESOLVED, region_id=region.id, coverage=tuple(coverage))

        if len(coverage) == 1:
            code = coverage[0]
            dest_id = self.destinations.get(code)
            if dest_id is not None:
                return ResolvedLocation(
                    RESOLVED, destination_id=dest_id, country_code=code, coverage=(code,)
                )
            return ResolvedLocation(UNRESOLVED, country_code=code, coverage=(code,))

        if len(coverage) > 1:
            region = self.best_region_for(coverage)
            if region:
                return ResolvedLocation(RESOLVED, region_id=region.id, coverage=tuple(coverage))

        return ResolvedLocation(UNRESOLVED, coverage=tuple(coverage))
