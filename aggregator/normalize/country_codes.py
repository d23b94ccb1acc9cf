"""Seed data for the country code mapping table.

Providers identify countries by ISO 3166 alpha-3 codes, display names, or
slugs derived from names. Each entry below yields one mapping row per form.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aggregator.db.models import CountryCodeMapping
from aggregator.normalize.locations import slugify

logger = logging.getLogger(__name__)

# (ISO2, ISO3, name)
COUNTRIES: list[tuple[str, str, str]] = [
    ("AE", "ARE", "United Arab Emirates"),
    ("AL", "ALB", "Albania"),
    ("AR", "ARG", "Argentina"),
    ("AT", "AUT", "Austria"),
    ("AU", "AUS", "Australia"),
    ("BA", "BIH", "Bosnia and Herzegovina"),
    ("BE", "BEL", "Belgium"),
    ("BG", "BGR", "Bulgaria"),
    ("BR", "BRA", "Brazil"),
    ("CA", "CAN", "Canada"),
    ("CH", "CHE", "Switzerland"),
    ("CL", "CHL", "Chile"),
    ("CN", "CHN", "China"),
    ("CO", "COL", "Colombia"),
    ("CY", "CYP", "Cyprus"),
    ("CZ", "CZE", "Czech Republic"),
    ("DE", "DEU", "Germany"),
    ("DK", "DNK", "Denmark"),
    ("DO", "DOM", "Dominican Republic"),
    ("EE", "EST", "Estonia"),
    ("EG", "EGY", "Egypt"),
    ("ES", "ESP", "Spain"),
    ("FI", "FIN", "Finland"),
    ("FR", "FRA", "France"),
    ("GB", "GBR", "United Kingdom"),
    ("GR", "GRC", "Greece"),
    ("HK", "HKG", "Hong Kong"),
    ("HR", "HRV", "Croatia"),
    ("HU", "HUN", "Hungary"),
    ("ID", "IDN", "Indonesia"),
    ("IE", "IRL", "Ireland"),
    ("IL", "ISR", "Israel"),
    ("IN", "IND", "India"),
    ("IS", "ISL", "Iceland"),
    ("IT", "ITA", "Italy"),
    ("JM", "JAM", "Jamaica"),
    ("JP", "JPN", "Japan"),
    ("KE", "KEN", "Kenya"),
    ("KR", "KOR", "South Korea"),
    ("LT", "LTU", "Lithuania"),
    ("LU", "LUX", "Luxembourg"),
    ("LV", "LVA", "Latvia"),
    ("MA", "MAR", "Morocco"),
    ("ME", "MNE", "Montenegro"),
    ("MT", "MLT", "Malta"),
    ("MX", "MEX", "Mexico"),
    ("MY", "MYS", "Malaysia"),
    ("NG", "NGA", "Nigeria"),
    ("NL", "NLD", "Netherlands"),
    ("NO", "NOR", "Norway"),
    ("NZ", "NZL", "New Zealand"),
    ("PE", "PER", "Peru"),
    ("PH", "PHL", "Philippines"),
    ("PL", "POL", "Poland"),
    ("PT", "PRT", "Portugal"),
    ("QA", "QAT", "Qatar"),
    ("RO", "ROU", "Romania"),
    ("RS", "SRB", "Serbia"),
    ("SA", "SAU", "Saudi Arabia"),
    ("SE", "SWE", "Sweden"),
    ("SG", "SGP", "Singapore"),
    ("SI", "SVN", "Slovenia"),
    ("SK", "SVK", "Slovakia"),
    ("TH", "THA", "Thailand"),
    ("TR", "TUR", "Turkey"),
    ("TT", "TTO", "Trinidad and Tobago"),
    ("TW", "TWN", "Taiwan"),
    ("UA", "UKR", "Ukraine"),
    ("US", "USA", "United States"),
    ("VN", "VNM", "Vietnam"),
    ("ZA", "ZAF", "South Africa"),
]

# Alternate spellings seen in provider catalogs
ALIASES: dict[str, str] = {
    "usa": "US",
    "uk": "GB",
    "great-britain": "GB",
    "turkiye": "TR",
    "czechia": "CZ",
    "korea": "KR",
    "uae": "AE",
}


def mapping_rows() -> list[dict]:
    """Build mapping rows for every seeded country and alias."""
    rows = []
    for iso2, iso3, name in COUNTRIES:
        rows.append({"external_code": iso3, "internal_code": iso2, "country_name": name, "code_type": "iso3"})
        rows.append({"external_code": slugify(name), "internal_code": iso2, "country_name": name, "code_type": "slug"})
    for alias, iso2 in ALIASES.items():
        rows.append({"external_code": alias, "internal_code": iso2, "country_name": None, "code_type": "alias"})
    return rows


async def seed_country_code_mappings(session: AsyncSession) -> int:
    """
    Insert missing mapping rows. Safe to run repeatedly.

    Returns:
        Number of rows inserted
    """
    result = await session.execute(
        select(CountryCodeMapping.external_code, CountryCodeMapping.code_type)
    )
    existing = {(code, code_type) for code, code_type in result.all()}

    inserted = 0
    for row in mapping_rows():
        if (row["external_code"], row["code_type"]) in existing:
            continue
        session.add(CountryCodeMapping(**row))
        inserted += 1

    await session.flush()
    logger.info(f"Seeded {inserted} country code mappings")
    return inserted
