"""Tests for cross-provider price comparison."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from aggregator.compare.engine import ComparisonCandidate, PriceComparisonEngine, select_winner
from aggregator.compare.equivalence import UNLIMITED, EquivalenceKey, key_for
from aggregator.db.models import BestPriceMark, UnifiedPackage
from aggregator.errors import NotFoundError

GB = 1024 ** 3


def _candidate(package_id, price, priority=100, age_minutes=0):
    return ComparisonCandidate(
        package_id=package_id,
        provider_id=package_id,
        sell_price=Decimal(price),
        failover_priority=priority,
        updated_at=datetime(2024, 1, 1) - timedelta(minutes=age_minutes),
    )


class TestSelectWinner:
    def test_lowest_price_wins(self):
        winner, delta = select_winner([_candidate(1, "5.00"), _candidate(2, "4.50"), _candidate(3, "6.00")])
        assert winner.package_id == 2
        assert delta == Decimal("0.50")

    def test_single_member_has_no_delta(self):
        winner, delta = select_winner([_candidate(1, "5.00")])
        assert winner.package_id == 1
        assert delta is None

    def test_tie_goes_to_lower_priority(self):
        winner, delta = select_winner([_candidate(1, "5.00", priority=20), _candidate(2, "5.00", priority=10)])
        assert winner.package_id == 2
        assert delta == Decimal("0")

    def test_then_most_recently_updated(self):
        winner, _ = select_winner([_candidate(1, "5.00", age_minutes=30), _candidate(2, "5.00", age_minutes=5)])
        assert winner.package_id == 2

    def test_then_lowest_id(self):
        winner, _ = select_winner([_candidate(7, "5.00"), _candidate(3, "5.00")])
        assert winner.package_id == 3

    def test_empty_group(self):
        with pytest.raises(ValueError):
            select_winner([])


class TestEquivalenceKey:
    def test_string_form_parses_back(self):
        key = EquivalenceKey(location="dest:4", data=GB, validity_days=7, voice_minutes=0, sms_count=10, currency="EUR")
        assert EquivalenceKey.parse(key.as_string()) == key
        assert key.destination_id == 4
        assert key.region_id is None

    def test_unlimited(self):
        key = EquivalenceKey(location="region:2", data=UNLIMITED, validity_days=1)
        assert key.as_string() == "region:2|unlimited|1d|v0|s0|USD"
        assert key.region_id == 2

    def test_invalid_string(self):
        with pytest.raises(ValueError):
            EquivalenceKey.parse("nonsense")

    def test_currency_is_part_of_the_key(self):
        usd = UnifiedPackage(
            location_status="resolved", destination_id=1, data_amount_bytes=GB,
            is_unlimited=False, validity_days=7, currency="USD",
        )
        jpy = UnifiedPackage(
            location_status="resolved", destination_id=1, data_amount_bytes=GB,
            is_unlimited=False, validity_days=7, currency="jpy",
        )
        assert key_for(usd) != key_for(jpy)
        assert key_for(jpy).currency == "JPY"

    def test_unresolved_package_has_no_key(self):
        package = UnifiedPackage(location_status="unresolved", destination_id=None, region_id=None)
        assert key_for(package) is None


async def _best(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(UnifiedPackage.id).where(UnifiedPackage.is_best_price.is_(True)))
        return set(result.scalars().all())


@pytest.mark.asyncio
async def test_marks_cheapest_per_group(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    expensive = await catalog.package(airalo, us, sell_price="5.00")
    cheap = await catalog.package(esim_go, us, sell_price="4.50")
    other_plan = await catalog.package(airalo, us, sell_price="9.00", validity_days=30)

    result = await PriceComparisonEngine(session_factory).run_comparison()

    assert result.total_packages == 3
    assert result.best_price_packages == 2
    assert await _best(session_factory) == {cheap.id, other_plan.id}
    assert expensive.id not in await _best(session_factory)

    async with session_factory() as db:
        marks = {m.package_id: m for m in (await db.execute(select(BestPriceMark))).scalars().all()}
    assert marks[cheap.id].member_count == 2
    assert marks[cheap.id].runner_up_delta == Decimal("0.50")
    assert marks[other_plan.id].runner_up_delta is None


@pytest.mark.asyncio
async def test_different_allowances_are_not_equivalent(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    data_only = await catalog.package(airalo, us, sell_price="5.00")
    with_sms = await catalog.package(esim_go, us, sell_price="6.00", sms_count=100)

    await PriceComparisonEngine(session_factory).run_comparison()

    assert await _best(session_factory) == {data_only.id, with_sms.id}


@pytest.mark.asyncio
async def test_disabled_and_unresolved_packages_are_excluded(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    disabled = await catalog.provider("esim-go", enabled=False)
    us = await catalog.destination("US")
    eligible = await catalog.package(airalo, us, sell_price="5.00")
    await catalog.package(disabled, us, sell_price="1.00", is_best_price=True)
    await catalog.package(airalo, sell_price="0.50")

    await PriceComparisonEngine(session_factory).run_comparison()

    assert await _best(session_factory) == {eligible.id}

    stats = await PriceComparisonEngine(session_factory).get_statistics()
    assert stats.unresolved_packages == 1
    assert stats.best_price_packages == 1
    assert stats.group_count == 1


@pytest.mark.asyncio
async def test_rerun_is_idempotent_and_follows_price_changes(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    first = await catalog.package(airalo, us, sell_price="5.00")
    second = await catalog.package(esim_go, us, sell_price="6.00")
    engine = PriceComparisonEngine(session_factory)

    await engine.run_comparison()
    await engine.run_comparison()
    assert await _best(session_factory) == {first.id}

    async with session_factory() as db:
        async with db.begin():
            (await db.get(UnifiedPackage, second.id)).sell_price = Decimal("4.00")
    await engine.run_comparison()

    assert await _best(session_factory) == {second.id}


@pytest.mark.asyncio
async def test_vanished_group_mark_is_removed(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    us = await catalog.destination("US")
    package = await catalog.package(airalo, us)
    engine = PriceComparisonEngine(session_factory)
    await engine.run_comparison()

    async with session_factory() as db:
        async with db.begin():
            (await db.get(UnifiedPackage, package.id)).active = False
    result = await engine.run_comparison()

    assert result.marks_removed == 1
    assert await _best(session_factory) == set()


@pytest.mark.asyncio
async def test_scoped_run_leaves_other_destinations(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    fr = await catalog.destination("FR")
    us_pkg = await catalog.package(airalo, us, sell_price="5.00")
    fr_a = await catalog.package(airalo, fr, sell_price="5.00")
    fr_b = await catalog.package(esim_go, fr, sell_price="7.00")
    engine = PriceComparisonEngine(session_factory)
    await engine.run_comparison()

    async with session_factory() as db:
        async with db.begin():
            (await db.get(UnifiedPackage, fr_b.id)).sell_price = Decimal("3.00")
    result = await engine.run_for_destination(fr.id)

    assert result.total_packages == 2
    assert result.marks_removed == 0
    assert await _best(session_factory) == {us_pkg.id, fr_b.id}
    assert fr_a.id not in await _best(session_factory)


@pytest.mark.asyncio
async def test_regional_packages_compare_by_region(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    europe = await catalog.region("Europe", ["FR", "DE"], code="EU")
    await catalog.package(airalo, region=europe, sell_price="12.00")
    winner = await catalog.package(esim_go, region=europe, sell_price="10.00")

    result = await PriceComparisonEngine(session_factory).run_for_region(europe.id)

    assert result.best_price_packages == 1
    assert await _best(session_factory) == {winner.id}


@pytest.mark.asyncio
async def test_unknown_scope(session_factory):
    engine = PriceComparisonEngine(session_factory)
    with pytest.raises(NotFoundError):
        await engine.run_for_destination(404)
    with pytest.raises(NotFoundError):
        await engine.run_for_region(404)


@pytest.mark.asyncio
async def test_currencies_are_compared_separately(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    usd = await catalog.package(airalo, us, currency="USD", sell_price="11.50")
    jpy = await catalog.package(esim_go, us, currency="JPY", sell_price="1150")

    result = await PriceComparisonEngine(session_factory).run_comparison()

    assert result.best_price_packages == 2
    assert await _best(session_factory) == {usd.id, jpy.id}
    async with session_factory() as db:
        keys = set((await db.execute(select(BestPriceMark.group_key))).scalars().all())
    assert {EquivalenceKey.parse(k).currency for k in keys} == {"USD", "JPY"}
