"""Tests for app-store price bracket generation."""

from decimal import Decimal

import pytest

from aggregator.brackets.generator import PriceBracketGenerator, plan_brackets, product_id_for
from aggregator.errors import NotFoundError, ValidationError


class TestPlanBrackets:
    def test_covers_range_in_step_buckets(self):
        plans = plan_brackets("USD", "5", Decimal("4.30"), Decimal("19.90"))

        assert [(p.min_price, p.max_price) for p in plans] == [
            (Decimal("0.00"), Decimal("5.00")),
            (Decimal("5.00"), Decimal("10.00")),
            (Decimal("10.00"), Decimal("15.00")),
            (Decimal("15.00"), Decimal("20.00")),
        ]
        assert plans[0].product_id == "esim_tier_usd_500_0"

    def test_buckets_are_contiguous_and_contain_every_price(self):
        plans = plan_brackets("USD", "2.50", Decimal("1.10"), Decimal("13.70"))

        for left, right in zip(plans, plans[1:]):
            assert left.max_price == right.min_price
        for price in ("1.10", "2.50", "7.49", "13.70"):
            assert sum(p.contains(Decimal(price)) for p in plans) == 1

    def test_max_on_a_boundary_gets_its_own_bucket(self):
        plans = plan_brackets("USD", "5", Decimal("5.00"), Decimal("10.00"))

        assert [p.bucket_index for p in plans] == [1, 2]
        assert plans[-1].contains(Decimal("10.00"))

    def test_single_price(self):
        plans = plan_brackets("usd", "5", Decimal("7.00"), Decimal("7.00"))
        assert len(plans) == 1
        assert plans[0].currency == "USD"

    def test_zero_decimal_currency(self):
        plans = plan_brackets("JPY", "500", Decimal("480"), Decimal("1200"))
        assert [p.min_price for p in plans] == [Decimal("0"), Decimal("500"), Decimal("1000")]
        assert product_id_for("JPY", Decimal("500"), 2) == "esim_tier_jpy_500_2"

    @pytest.mark.parametrize("step", ["0", "-5", "abc", "0.001"])
    def test_invalid_step(self, step):
        with pytest.raises(ValidationError):
            plan_brackets("USD", step, Decimal("1"), Decimal("2"))

    def test_inverted_range(self):
        with pytest.raises(ValidationError):
            plan_brackets("USD", "5", Decimal("10"), Decimal("1"))

    def test_too_many_brackets(self):
        with pytest.raises(ValidationError):
            plan_brackets("USD", "0.01", Decimal("0"), Decimal("100"), max_brackets=50)

    def test_invalid_currency(self):
        with pytest.raises(ValidationError):
            plan_brackets("", "5", Decimal("1"), Decimal("2"))


class FakeSubmitter:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.submitted: list[str] = []

    async def submit(self, bracket):
        self.submitted.append(bracket.product_id)
        if bracket.product_id in self.fail_on:
            raise RuntimeError("store rejected price")


async def _seed_catalog(catalog, low="4.30", high="19.90"):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    await catalog.package(provider, us, sell_price=low)
    await catalog.package(provider, us, sell_price=high)
    return provider, us


@pytest.mark.asyncio
async def test_preview_writes_nothing(session_factory, catalog):
    await _seed_catalog(catalog)
    generator = PriceBracketGenerator(session_factory)

    preview = await generator.preview("USD", "5")

    assert preview.min_price == Decimal("4.30")
    assert preview.max_price == Decimal("19.90")
    assert len(preview.brackets) == 4
    assert await generator.list_brackets("USD") == []


@pytest.mark.asyncio
async def test_price_range_ignores_unresolved_and_disabled(session_factory, catalog):
    provider, us = await _seed_catalog(catalog)
    disabled = await catalog.provider("esim-go", enabled=False)
    await catalog.package(disabled, us, sell_price="0.99")
    await catalog.package(provider, sell_price="99.00")

    low, high = await PriceBracketGenerator(session_factory).price_range("USD")

    assert (low, high) == (Decimal("4.30"), Decimal("19.90"))


@pytest.mark.asyncio
async def test_unknown_currency_has_no_range(session_factory, catalog):
    await _seed_catalog(catalog)
    with pytest.raises(NotFoundError):
        await PriceBracketGenerator(session_factory).preview("EUR", "5")


@pytest.mark.asyncio
async def test_generate_is_idempotent(session_factory, catalog):
    await _seed_catalog(catalog)
    generator = PriceBracketGenerator(session_factory)

    first = await generator.generate("USD", "5")
    second = await generator.generate("USD", "5")

    assert first.created == 4
    assert second.created == 0
    assert second.reused == 4
    assert second.deactivated == 0
    assert len(await generator.list_brackets("USD")) == 4


@pytest.mark.asyncio
async def test_new_step_supersedes_old_brackets(session_factory, catalog):
    await _seed_catalog(catalog)
    generator = PriceBracketGenerator(session_factory)
    await generator.generate("USD", "5")

    result = await generator.generate("USD", "10")

    assert result.created == 2
    assert result.deactivated == 4
    active = await generator.list_brackets("USD")
    assert [b.step_size for b in active] == [Decimal("10.00"), Decimal("10.00")]
    assert len(await generator.list_brackets("USD", active_only=False)) == 6


@pytest.mark.asyncio
async def test_submit_records_status_per_platform(session_factory, catalog):
    await _seed_catalog(catalog)
    generator = PriceBracketGenerator(session_factory)
    await generator.generate("USD", "5")
    android = FakeSubmitter()
    apple = FakeSubmitter(fail_on={"esim_tier_usd_500_2"})

    summary = await generator.submit_pending("USD", {"android": android, "apple": apple})

    assert summary.submitted == 8
    assert summary.succeeded == 7
    assert summary.failed == 1
    rows = {b.product_id: b for b in await generator.list_brackets("USD")}
    assert rows["esim_tier_usd_500_2"].apple_status == "error"
    assert rows["esim_tier_usd_500_2"].apple_sync_error == "store rejected price"
    assert rows["esim_tier_usd_500_2"].android_status == "success"

    # Only the failed submission is retried
    apple.fail_on.clear()
    retry = await generator.submit_pending("USD", {"android": android, "apple": apple})
    assert retry.submitted == 1
    assert retry.succeeded == 1


@pytest.mark.asyncio
async def test_regenerate_keeps_submission_history(session_factory, catalog):
    await _seed_catalog(catalog)
    generator = PriceBracketGenerator(session_factory)
    await generator.generate("USD", "5")
    await generator.submit_pending("USD", {"android": FakeSubmitter()})

    await generator.generate("USD", "5")

    assert {b.android_status for b in await generator.list_brackets("USD")} == {"success"}


@pytest.mark.asyncio
async def test_submit_validation(session_factory, catalog):
    generator = PriceBracketGenerator(session_factory)
    with pytest.raises(ValidationError):
        await generator.submit_pending("USD", {"windows": FakeSubmitter()})
    with pytest.raises(NotFoundError):
        await generator.submit_pending("USD", {"android": FakeSubmitter()})
