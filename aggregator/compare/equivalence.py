"""Equivalence keys grouping interchangeable offers across providers."""

from dataclasses import dataclass
from typing import Optional, Union

from aggregator.db.models import UnifiedPackage
from aggregator.normalize.locations import RESOLVED

UNLIMITED = "unlimited"


@dataclass(frozen=True)
class EquivalenceKey:
    """Packages with equal keys are considered the same offer."""

    location: str  # "dest:<id>" or "region:<id>"
    data: Union[int, str]  # bytes, or UNLIMITED
    validity_days: int
    voice_minutes: int = 0
    sms_count: int = 0
    currency: str = "USD"  # prices are only comparable within one currency

    def as_string(self) -> str:
        data = self.data if self.data == UNLIMITED else f"{self.data}b"
        return (
            f"{self.location}|{data}|{self.validity_days}d|v{self.voice_minutes}"
            f"|s{self.sms_count}|{self.currency}"
        )

    @property
    def destination_id(self) -> Optional[int]:
        kind, _, value = self.location.partition(":")
        return int(value) if kind == "dest" else None

    @property
    def region_id(self) -> Optional[int]:
        kind, _, value = self.location.partition(":")
        return int(value) if kind == "region" else None

    @classmethod
    def parse(cls, value: str) -> "EquivalenceKey":
        """Inverse of as_string()."""
        try:
            location, data, validity, voice, sms, currency = value.split("|")
            return cls(
                location=location,
                data=UNLIMITED if data == UNLIMITED else int(data.rstrip("b")),
                validity_days=int(validity.rstrip("d")),
                voice_minutes=int(voice.lstrip("v")),
                sms_count=int(sms.lstrip("s")),
                currency=currency,
            )
        except ValueError:
            raise ValueError(f"Invalid equivalence key: {value!r}")


def location_key(destination_id: Optional[int], region_id: Optional[int]) -> Optional[str]:
    if destination_id is not None:
        return f"dest:{destination_id}"
    if region_id is not None:
        return f"region:{region_id}"
    return None


def key_for(package: UnifiedPackage) -> Optional[EquivalenceKey]:
    """Equivalence key for a package, or None if its location is unresolved."""
    if package.location_status != RESOLVED:
        return None
    location = location_key(package.destination_id, package.region_id)
    if location is None:
        return None
    data: Union[int, str] = UNLIMITED if package.is_unlimited else package.data_amount_bytes
    if data is None:
        return None
    return EquivalenceKey(
        location=location,
        data=data,
        validity_days=package.validity_days,
        voice_minutes=package.voice_minutes or 0,
        sms_count=package.sms_count or 0,
        currency=(package.currency or "USD").upper(),
    )
