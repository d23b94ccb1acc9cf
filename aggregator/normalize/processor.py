"""Normalize raw provider offers into the unified package shape."""

import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Optional

from aggregator.config import settings
from aggregator.ingest.base import (
    PROVIDER_AIRALO,
    PROVIDER_ESIM_ACCESS,
    PROVIDER_ESIM_GO,
    RawOffer,
)
from aggregator.normalize.locations import LocationResolver, ResolvedLocation

logger = logging.getLogger(__name__)

UNIT_BYTES = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}

VALIDITY_UNIT_DAYS = {
    "DAY": 1,
    "DAYS": 1,
    "D": 1,
    "WEEK": 7,
    "WEEKS": 7,
    "MONTH": 30,
    "MONTHS": 30,
    "YEAR": 365,
    "YEARS": 365,
}

_AMOUNT_RE = re.compile(r"^(-?\d+(?:\.\d+)?)\s*(TB|GB|MB|KB|B)?$", re.IGNORECASE)
_ESIM_GO_NAME_RE = re.compile(r"esim_(\d+(?:\.\d+)?)(MB|GB)_(\d+)D_", re.IGNORECASE)

# Providers report "unlimited" voice/SMS allowances with this many units
UNLIMITED_ALLOWANCE = 9999


class NormalizationError(Exception):
    """Raised when a raw offer cannot be converted."""

    pass


@dataclass
class UnifiedPackageData:
    """Provider-independent package produced by normalization."""

    provider_slug: str
    provider_package_id: str
    title: str
    data_amount_bytes: Optional[int]  # None when unlimited
    is_unlimited: bool
    validity_days: int
    wholesale_cost: Decimal
    currency: str
    location: ResolvedLocation
    voice_minutes: int = 0
    sms_count: int = 0
    package_type: str = "local"  # local, regional, global

    @property
    def data_amount(self) -> str:
        """Display label, e.g. "1GB" or "Unlimited"."""
        if self.is_unlimited or self.data_amount_bytes is None:
            return "Unlimited"
        return format_data_amount(self.data_amount_bytes)


@dataclass
class BatchResult:
    """Normalized packages plus the offers that were skipped."""

    packages: list[UnifiedPackageData] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def parse_data_amount(
    value: Any,
    default_unit: str = "MB",
    unlimited_threshold_mb: Optional[int] = None,
) -> tuple[Optional[int], bool]:
    """
    Parse a data allowance into bytes.

    Args:
        value: Free text ("1GB", "500 MB", "Unlimited", "-1MB") or a number
        default_unit: Unit for bare numbers (B, KB, MB, GB)
        unlimited_threshold_mb: Allowances at or above this many MB count as unlimited

    Returns:
        (bytes, is_unlimited); bytes is None when unlimited

    Raises:
        NormalizationError: If the value cannot be parsed or is not positive
    """
    if unlimited_threshold_mb is None:
        unlimited_threshold_mb = settings.unlimited_threshold_mb

    if value is None or isinstance(value, bool):
        raise NormalizationError(f"Missing data amount: {value!r}")

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise NormalizationError(f"Invalid data amount: {value!r}")
        unit = default_unit.upper()
    else:
        text = str(value).strip()
        if "unlimited" in text.lower() or text.upper() == "UNLIM":
            return None, True
        match = _AMOUNT_RE.match(text)
        if not match:
            raise NormalizationError(f"Unparseable data amount: {value!r}")
        amount = Decimal(match.group(1))
        unit = (match.group(2) or default_unit).upper()

    if unit not in UNIT_BYTES:
        raise NormalizationError(f"Unknown data unit: {unit}")

    # -1 is the provider sentinel for unlimited
    if amount == -1:
        return None, True
    if amount <= 0:
        raise NormalizationError(f"Non-positive data amount: {value!r}")

    total_bytes = int((amount * UNIT_BYTES[unit]).to_integral_value(rounding=ROUND_HALF_UP))
    if total_bytes >= unlimited_threshold_mb * UNIT_BYTES["MB"]:
        return None, True
    return total_bytes, False


def format_data_amount(total_bytes: int) -> str:
    """Format bytes as a short label ("500MB", "1GB", "1.5GB")."""
    mb = Decimal(total_bytes) / UNIT_BYTES["MB"]
    if mb >= 1024:
        gb = mb / 1024
        if gb == gb.to_integral_value():
            return f"{int(gb)}GB"
        return f"{gb.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP).normalize()}GB"
    if mb == mb.to_integral_value():
        return f"{int(mb)}MB"
    return f"{mb.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP).normalize()}MB"


def parse_validity_days(value: Any, unit: Optional[str] = "DAY") -> int:
    """Convert a duration and unit to whole days."""
    if value is None or isinstance(value, bool):
        raise NormalizationError("Missing validity")
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise NormalizationError(f"Invalid validity: {value!r}")
    multiplier = VALIDITY_UNIT_DAYS.get((unit or "DAY").strip().upper())
    if multiplier is None:
        raise NormalizationError(f"Unknown validity unit: {unit!r}")
    if amount <= 0:
        raise NormalizationError(f"Non-positive validity: {value!r}")
    return amount * multiplier


def parse_money(value: Any, divisor: int = 1) -> Decimal:
    """Parse a positive wholesale price, optionally scaled down by ``divisor``."""
    if value is None or isinstance(value, bool):
        raise NormalizationError("Missing price")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise NormalizationError(f"Invalid price: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise NormalizationError(f"Non-positive price: {value!r}")
    return amount / divisor if divisor != 1 else amount


def normalize_currency(value: Any, default: str = "USD") -> str:
    """Return an upper-cased 3-letter currency code."""
    if value is None or value == "":
        return default
    code = str(value).strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise NormalizationError(f"Invalid currency: {value!r}")
    return code


def _count(value: Any) -> int:
    """Voice/SMS credit count; missing values default to zero."""
    if value is None or value == "":
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        raise NormalizationError(f"Invalid credit count: {value!r}")


def _package_type(country_count: int, region_hint: Optional[str], is_global: bool = False) -> str:
    if is_global or country_count > 10:
        return "global"
    if region_hint or country_count > 1:
        return "regional"
    return "local"


class PackageNormalizer:
    """Convert raw offers from each provider into UnifiedPackageData."""

    def __init__(
        self,
        locations: LocationResolver,
        unlimited_threshold_mb: Optional[int] = None,
    ):
        self.locations = locations
        self.unlimited_threshold_mb = unlimited_threshold_mb or settings.unlimited_threshold_mb
        self._adapters: dict[str, Callable[[RawOffer], UnifiedPackageData]] = {
            PROVIDER_AIRALO: self._from_airalo,
            PROVIDER_ESIM_ACCESS: self._from_esim_access,
            PROVIDER_ESIM_GO: self._from_esim_go,
        }

    def normalize(self, provider_slug: str, raw: RawOffer) -> UnifiedPackageData:
        """
        Normalize one raw offer.

        Args:
            provider_slug: Slug of the provider being synced
            raw: Offer as fetched

        Returns:
            UnifiedPackageData

        Raises:
            NormalizationError: If the offer is malformed or the provider is unknown
        """
        if raw.provider != provider_slug:
            raise NormalizationError(
                f"Offer tagged '{raw.provider}' passed to '{provider_slug}' normalizer"
            )
        adapter = self._adapters.get(provider_slug)
        if adapter is None:
            raise NormalizationError(f"No normalizer for provider '{provider_slug}'")
        if not raw.native_id:
            raise NormalizationError("Offer has no provider-native id")
        return adapter(raw)

    def normalize_batch(self, provider_slug: str, offers: Iterable[RawOffer]) -> BatchResult:
        """Normalize offers, skipping and logging the ones that fail."""
        result = BatchResult()
        for raw in offers:
            try:
                result.packages.append(self.normalize(provider_slug, raw))
            except NormalizationError as e:
                logger.warning(f"Skipping {provider_slug} offer {raw.native_id or '<no id>'}: {e}")
                result.errors.append(f"{raw.native_id or '<no id>'}: {e}")
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                # Payload had an unexpected shape
                logger.warning(
                    f"Skipping {provider_slug} offer {raw.native_id or '<no id>'}: "
                    f"malformed payload ({type(e).__name__}: {e})"
                )
                result.errors.append(f"{raw.native_id or '<no id>'}: malformed payload")
        return result

    def _data(self, value: Any, unit: str) -> tuple[Optional[int], bool]:
        return parse_data_amount(value, unit, self.unlimited_threshold_mb)

    def _from_airalo(self, raw: RawOffer) -> UnifiedPackageData:
        p: Mapping[str, Any] = raw.payload

        if p.get("is_unlimited"):
            data_bytes, unlimited = None, True
        elif p.get("amount") not in (None, ""):
            data_bytes, unlimited = self._data(p["amount"], "MB")
        else:
            data_bytes, unlimited = self._data(p.get("data"), "GB")

        # net_price is the wholesale cost; price is the recommended retail
        price = p.get("net_price") if p.get("net_price") not in (None, "") else p.get("price")

        countries = list(p.get("coverage") or [])
        if not countries:
            countries = [p.get("country_code") or p.get("country_slug")]
        region_hint = p.get("region_slug")

        location = self.locations.resolve(countries, region_hint)
        return UnifiedPackageData(
            provider_slug=raw.provider,
            provider_package_id=raw.native_id,
            title=str(p.get("title") or raw.native_id),
            data_amount_bytes=data_bytes,
            is_unlimited=unlimited,
            validity_days=parse_validity_days(p.get("day"), "DAY"),
            wholesale_cost=parse_money(price),
            currency=normalize_currency(p.get("currency")),
            location=location,
            voice_minutes=_count(p.get("voice")),
            sms_count=_count(p.get("text")),
            package_type=_package_type(len(location.coverage), region_hint),
        )

    def _from_esim_access(self, raw: RawOffer) -> UnifiedPackageData:
        p: Mapping[str, Any] = raw.payload

        location_field = str(p.get("location") or "").strip()
        is_global = location_field.startswith("!GL")
        is_regional = location_field.startswith("!RG")
        region_hint = None
        if is_global or is_regional:
            region_hint = p.get("locationCode") or location_field
            countries: list[Optional[str]] = []
        else:
            countries = [c.strip() for c in location_field.split(",") if c.strip()]
        if not countries and not region_hint:
            # Slugs look like "US_1_7"
            slug = str(p.get("slug") or "")
            countries = [slug.split("_")[0]] if "_" in slug else []

        data_bytes, unlimited = self._data(p.get("volume"), "B")
        location = self.locations.resolve(countries, region_hint)
        return UnifiedPackageData(
            provider_slug=raw.provider,
            provider_package_id=raw.native_id,
            title=str(p.get("name") or raw.native_id),
            data_amount_bytes=data_bytes,
            is_unlimited=unlimited,
            validity_days=parse_validity_days(p.get("duration"), p.get("durationUnit") or "DAY"),
            # Prices are reported in 1/10000 of the currency unit
            wholesale_cost=parse_money(p.get("price"), divisor=10000),
            currency=normalize_currency(p.get("currencyCode")),
            location=location,
            voice_minutes=_count(p.get("voiceMinutes")),
            sms_count=_count(p.get("smsCount")),
            package_type=_package_type(len(location.coverage), region_hint, is_global),
        )

    def _from_esim_go(self, raw: RawOffer) -> UnifiedPackageData:
        p: Mapping[str, Any] = raw.payload

        data_value = p.get("dataAmount")
        validity = p.get("duration")
        if not data_value and not p.get("unlimited"):
            match = _ESIM_GO_NAME_RE.search(str(p.get("name") or ""))
            if match:
                data_value = f"{match.group(1)}{match.group(2)}"
                validity = validity or int(match.group(3))

        if p.get("unlimited"):
            data_bytes, unlimited = None, True
        else:
            data_bytes, unlimited = self._data(data_value, "MB")

        voice = sms = 0
        for allowance in p.get("allowances") or []:
            kind = str(allowance.get("type", "")).upper()
            amount = UNLIMITED_ALLOWANCE if allowance.get("unlimited") else _count(allowance.get("amount"))
            if kind == "VOICE":
                voice = amount
            elif kind == "SMS":
                sms = amount

        countries = [c.get("iso") for c in (p.get("countries") or []) if isinstance(c, Mapping)]
        region_hint = p.get("region")
        location = self.locations.resolve(countries, region_hint)
        return UnifiedPackageData(
            provider_slug=raw.provider,
            provider_package_id=raw.native_id,
            title=str(p.get("description") or raw.native_id),
            data_amount_bytes=data_bytes,
            is_unlimited=unlimited,
            validity_days=parse_validity_days(validity, "DAY"),
            wholesale_cost=parse_money(p.get("price")),
            currency=normalize_currency(p.get("currency")),
            location=location,
            voice_minutes=voice,
            sms_count=sms,
            package_type=_package_type(len(location.coverage), region_hint),
        )
