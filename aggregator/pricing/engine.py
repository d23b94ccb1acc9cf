"""Sell price computation and margin enforcement."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from aggregator.db.models import Provider, UnifiedPackage
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import NotFoundError, ValidationError
from aggregator.registry.providers import ProviderRegistry, ProviderSnapshot

logger = logging.getLogger(__name__)

# ISO 4217 currencies whose minor unit is not 2 digits
MINOR_UNIT_DIGITS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}

HUNDRED = Decimal("100")


def minor_unit_quantum(currency: str) -> Decimal:
    """Smallest representable amount for a currency, e.g. 0.01 for USD."""
    digits = MINOR_UNIT_DIGITS.get(currency.upper(), 2)
    return Decimal(1).scaleb(-digits)


def quantize_price(amount: Decimal, currency: str = "USD") -> Decimal:
    """Round half-up to the currency's minor unit."""
    return Decimal(amount).quantize(minor_unit_quantum(currency), rounding=ROUND_HALF_UP)


def _decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite")
    return result


def compute_sell_price(wholesale_cost: Any, margin_percent: Any, currency: str = "USD") -> Decimal:
    """
    Apply a margin to a wholesale cost.

    sell = wholesale * (1 + margin / 100), rounded half-up to the minor unit.

    Raises:
        ValidationError: If cost or margin is negative
    """
    cost = _decimal(wholesale_cost, "wholesale_cost")
    margin = _decimal(margin_percent, "margin_percent")
    if cost < 0:
        raise ValidationError(f"Wholesale cost cannot be negative: {cost}")
    if margin < 0:
        raise ValidationError(f"Margin cannot be negative: {margin}")
    return quantize_price(cost * (1 + margin / HUNDRED), currency)


def effective_margin_percent(wholesale_cost: Any, sell_price: Any) -> Optional[Decimal]:
    """Markup of sell price over wholesale cost, in percent. None for zero cost."""
    cost = Decimal(str(wholesale_cost))
    if cost == 0:
        return None
    return (Decimal(str(sell_price)) - cost) / cost * HUNDRED


def meets_margin_floor(wholesale_cost: Any, sell_price: Any, floor_percent: Any) -> bool:
    margin = effective_margin_percent(wholesale_cost, sell_price)
    return margin is None or margin >= Decimal(str(floor_percent))


@dataclass
class RecomputeResult:
    provider_id: int
    checked: int = 0
    changed: int = 0


class PricingEngine:
    """Keep stored sell prices consistent with provider margins."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or ProviderRegistry(session_factory)

    async def recompute_provider(self, provider_id: int) -> RecomputeResult:
        """
        Recompute sell prices for all active packages of a provider.

        Idempotent: packages already at the derived price are left untouched.
        Packages with an admin override keep the override.
        """
        result = RecomputeResult(provider_id=provider_id)
        async with self.session_factory() as db:
            async with db.begin():
                provider = await db.get(Provider, provider_id)
                if provider is None:
                    raise NotFoundError(f"Provider {provider_id} not found")
                margin = Decimal(provider.pricing_margin_percent)

                packages = await db.execute(
                    select(UnifiedPackage).where(
                        UnifiedPackage.provider_id == provider_id,
                        UnifiedPackage.active.is_(True),
                    )
                )
                for package in packages.scalars().all():
                    result.checked += 1
                    if package.price_override is not None:
                        target = package.price_override
                    else:
                        target = compute_sell_price(package.wholesale_cost, margin, package.currency)
                    if package.sell_price != target:
                        package.sell_price = target
                        result.changed += 1

        logger.info(
            f"Recomputed prices for provider {provider_id}: "
            f"{result.changed}/{result.checked} packages changed"
        )
        return result

    async def update_provider_margin(
        self,
        provider_id: int,
        margin_percent: Any,
        min_margin_percent: Any = None,
    ) -> tuple[ProviderSnapshot, RecomputeResult]:
        """
        Change a provider's margin (and optionally floor), then reprice its packages.

        Raises:
            ValidationError: If the margin is invalid or an existing override
                would fall below the new floor
        """
        if min_margin_percent is not None:
            floor = _decimal(min_margin_percent, "min_margin_percent")
            async with self.session_factory() as db:
                overrides = await db.execute(
                    select(UnifiedPackage).where(
                        UnifiedPackage.provider_id == provider_id,
                        UnifiedPackage.active.is_(True),
                        UnifiedPackage.price_override.is_not(None),
                    )
                )
                for package in overrides.scalars().all():
                    if not meets_margin_floor(package.wholesale_cost, package.price_override, floor):
                        raise ValidationError(
                            f"Override {package.price_override} on package {package.id} "
                            f"would fall below the {floor}% floor"
                        )

        snapshot = await self.registry.update_margin(provider_id, margin_percent, min_margin_percent)
        return snapshot, await self.recompute_provider(provider_id)

    async def set_price_override(self, package_id: int, price: Any) -> UnifiedPackage:
        """
        Set or clear an admin price override on a package.

        Args:
            package_id: Package to override
            price: New sell price, or None to restore the derived price

        Raises:
            ValidationError: If the price is not positive or breaks the provider's margin floor
            NotFoundError: If the package does not exist
        """
        async with self.session_factory() as db:
            async with db.begin():
                package = await db.get(UnifiedPackage, package_id)
                if package is None:
                    raise NotFoundError(f"Package {package_id} not found")
                provider = await db.get(Provider, package.provider_id)

                if price is None:
                    package.price_override = None
                    package.sell_price = compute_sell_price(
                        package.wholesale_cost, provider.pricing_margin_percent, package.currency
                    )
                    logger.info(f"Cleared price override on package {package_id}")
                    return package

                override = _decimal(price, "price")
                if override <= 0:
                    raise ValidationError(f"Override price must be positive, got {override}")
                override = quantize_price(override, package.currency)
                if not meets_margin_floor(package.wholesale_cost, override, provider.min_margin_percent):
                    margin = effective_margin_percent(package.wholesale_cost, override)
                    raise ValidationError(
                        f"Override {override} gives a {margin:.2f}% margin, below the "
                        f"{provider.min_margin_percent}% floor for {provider.slug}"
                    )

                package.price_override = override
                package.sell_price = override
                logger.info(f"Set price override on package {package_id} to {override}")
                return package
