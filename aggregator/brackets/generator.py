"""App-store price bracket generation.

Mobile stores sell in-app products at fixed price points, so the catalog's
sell price range is cut into fixed-width half-open buckets and each bucket
becomes one store product.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from aggregator import metrics
from aggregator.config import settings
from aggregator.db.models import PriceBracket, Provider, UnifiedPackage
from aggregator.db.repository import CatalogRepository
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import NotFoundError, ValidationError
from aggregator.normalize.locations import RESOLVED
from aggregator.normalize.processor import NormalizationError, normalize_currency
from aggregator.pricing.engine import minor_unit_quantum

logger = logging.getLogger(__name__)

PLATFORMS = ("android", "apple")

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class BracketPlan:
    """A proposed bracket: prices in [min_price, max_price)."""

    currency: str
    step_size: Decimal
    bucket_index: int
    min_price: Decimal
    max_price: Decimal
    product_id: str

    def contains(self, price: Decimal) -> bool:
        return self.min_price <= price < self.max_price


@dataclass
class BracketPreview:
    currency: str
    step_size: Decimal
    min_price: Decimal
    max_price: Decimal
    brackets: list[BracketPlan] = field(default_factory=list)


@dataclass
class BracketGeneration:
    currency: str
    step_size: Decimal
    created: int = 0
    reused: int = 0
    deactivated: int = 0
    brackets: list[BracketPlan] = field(default_factory=list)


@dataclass
class SubmissionSummary:
    currency: str
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class StoreSubmitter(Protocol):
    """Capability to create or update one in-app product in a store."""

    async def submit(self, bracket: BracketPlan) -> None:
        """Submit a bracket; raise on failure."""
        ...


def _validate_step(currency: str, step_size: Any) -> Decimal:
    try:
        step = Decimal(str(step_size))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Step size must be a number, got {step_size!r}")
    if not step.is_finite() or step <= 0:
        raise ValidationError(f"Step size must be greater than 0, got {step_size}")
    quantum = minor_unit_quantum(currency)
    if step % quantum != 0:
        raise ValidationError(f"Step size {step} is finer than the {currency} minor unit {quantum}")
    return step


def _validate_currency(currency: str) -> str:
    if not currency:
        raise ValidationError("Currency is required")
    try:
        return normalize_currency(currency)
    except NormalizationError as e:
        raise ValidationError(str(e))


def product_id_for(currency: str, step_size: Decimal, bucket_index: int, prefix: Optional[str] = None) -> str:
    """Deterministic store product id for a bucket, e.g. ``esim_tier_usd_500_3``."""
    prefix = prefix or settings.bracket_product_prefix
    step_minor = int(step_size / minor_unit_quantum(currency))
    return f"{prefix}_{currency.lower()}_{step_minor}_{bucket_index}"


def plan_brackets(
    currency: str,
    step_size: Any,
    min_price: Decimal,
    max_price: Decimal,
    prefix: Optional[str] = None,
    max_brackets: Optional[int] = None,
) -> list[BracketPlan]:
    """
    Cut [min_price, max_price] into contiguous half-open buckets of width step_size.

    The first bucket starts at floor(min / step) * step and the last one is
    the bucket containing max_price.

    Raises:
        ValidationError: On an invalid step, currency or range, or too many buckets
    """
    currency = _validate_currency(currency)
    step = _validate_step(currency, step_size)
    low, high = Decimal(min_price), Decimal(max_price)
    if low < 0 or high < 0:
        raise ValidationError("Prices must not be negative")
    if low > high:
        raise ValidationError(f"Minimum price {low} is above maximum price {high}")

    first = int((low / step).to_integral_value(rounding=ROUND_FLOOR))
    last = int((high / step).to_integral_value(rounding=ROUND_FLOOR))
    count = last - first + 1
    limit = max_brackets or settings.max_price_brackets
    if count > limit:
        raise ValidationError(
            f"Step {step} would create {count} brackets for {currency} (limit {limit})"
        )

    quantum = minor_unit_quantum(currency)
    return [
        BracketPlan(
            currency=currency,
            step_size=step,
            bucket_index=index,
            min_price=(step * index).quantize(quantum),
            max_price=(step * (index + 1)).quantize(quantum),
            product_id=product_id_for(currency, step, index, prefix),
        )
        for index in range(first, last + 1)
    ]


def plan_from_row(row: PriceBracket) -> BracketPlan:
    return BracketPlan(
        currency=row.currency,
        step_size=Decimal(row.step_size),
        bucket_index=row.bucket_index,
        min_price=Decimal(row.min_price),
        max_price=Decimal(row.max_price),
        product_id=row.product_id,
    )


class PriceBracketGenerator:
    """Preview, persist and submit price brackets per currency."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        product_prefix: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.product_prefix = product_prefix or settings.bracket_product_prefix

    async def price_range(self, currency: str) -> tuple[Decimal, Decimal]:
        """
        Lowest and highest sell price of customer-facing packages in a currency.

        Raises:
            NotFoundError: If no active package uses the currency
        """
        currency = _validate_currency(currency)
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.min(UnifiedPackage.sell_price), func.max(UnifiedPackage.sell_price))
                .join(Provider, Provider.id == UnifiedPackage.provider_id)
                .where(
                    UnifiedPackage.active.is_(True),
                    UnifiedPackage.currency == currency,
                    UnifiedPackage.location_status == RESOLVED,
                    Provider.enabled.is_(True),
                )
            )
            low, high = result.one()
        if low is None or high is None:
            raise NotFoundError(f"No packages found for currency {currency}")
        return Decimal(str(low)), Decimal(str(high))

    async def preview(self, currency: str, step_size: Any) -> BracketPreview:
        """Proposed brackets for the current catalog. Nothing is written."""
        currency = _validate_currency(currency)
        step = _validate_step(currency, step_size)
        low, high = await self.price_range(currency)
        plans = plan_brackets(currency, step, low, high, self.product_prefix)
        return BracketPreview(currency=currency, step_size=step, min_price=low, max_price=high, brackets=plans)

    async def generate(self, currency: str, step_size: Any) -> BracketGeneration:
        """
        Persist brackets for a currency, superseding any earlier generation.

        Runs in a single transaction: readers see either the old active set or
        the new one.
        """
        preview = await self.preview(currency, step_size)
        generation = BracketGeneration(currency=preview.currency, step_size=preview.step_size)

        async with self.session_factory() as db:
            async with db.begin():
                outcome = await CatalogRepository(db).replace_brackets_for_currency(
                    preview.currency, preview.brackets
                )
                generation.created = outcome.created
                generation.reused = outcome.reused
                generation.deactivated = outcome.deactivated
                generation.brackets = [plan_from_row(row) for row in outcome.brackets]

        metrics.update_active_brackets(preview.currency, len(generation.brackets))
        logger.info(
            f"Generated {len(generation.brackets)} {preview.currency} brackets "
            f"(step {preview.step_size}): {generation.created} new, {generation.reused} reused, "
            f"{generation.deactivated} deactivated"
        )
        return generation

    async def list_brackets(
        self,
        currency: Optional[str] = None,
        active_only: bool = True,
    ) -> Sequence[PriceBracket]:
        async with self.session_factory() as db:
            query = select(PriceBracket).order_by(PriceBracket.currency, PriceBracket.min_price)
            if currency:
                query = query.where(PriceBracket.currency == _validate_currency(currency))
            if active_only:
                query = query.where(PriceBracket.is_active.is_(True))
            result = await db.execute(query)
            return result.scalars().all()

    async def submit_pending(
        self,
        currency: str,
        submitters: Mapping[str, StoreSubmitter],
    ) -> SubmissionSummary:
        """
        Submit active brackets to each store that has not accepted them yet.

        Each platform result is committed as soon as it is known, so a crash
        part-way through keeps the statuses already reported.
        """
        currency = _validate_currency(currency)
        unknown = set(submitters) - set(PLATFORMS)
        if unknown:
            raise ValidationError(f"Unknown store platforms: {', '.join(sorted(unknown))}")

        summary = SubmissionSummary(currency=currency)
        brackets = await self.list_brackets(currency, active_only=True)
        if not brackets:
            raise NotFoundError(f"No active brackets for currency {currency}")

        for bracket in brackets:
            plan = plan_from_row(bracket)
            for platform, submitter in submitters.items():
                if getattr(bracket, f"{platform}_status") == STATUS_SUCCESS:
                    continue
                summary.submitted += 1
                status, error = STATUS_SUCCESS, None
                try:
                    await submitter.submit(plan)
                    summary.succeeded += 1
                except Exception as e:
                    status, error = STATUS_ERROR, str(e) or type(e).__name__
                    summary.failed += 1
                    summary.errors.append(f"{platform}:{bracket.product_id}: {error}")
                    logger.error(f"Store submission failed for {bracket.product_id} on {platform}: {error}")

                async with self.session_factory() as db:
                    async with db.begin():
                        row = await db.get(PriceBracket, bracket.id)
                        setattr(row, f"{platform}_status", status)
                        setattr(row, f"{platform}_sync_error", error)
                        setattr(row, f"{platform}_last_sync_at", datetime.utcnow())

        logger.info(
            f"Submitted {currency} brackets: {summary.succeeded} succeeded, {summary.failed} failed"
        )
        return summary
