"""Tests for failover provider ordering."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from aggregator.compare.equivalence import key_for
from aggregator.db.models import UnifiedPackage
from aggregator.errors import NotFoundError, ServiceUnavailableError, ValidationError
from aggregator.failover.selector import FailoverCandidate, FailoverSelector, order_candidates


def _candidate(snapshot, package_id, wholesale="10.00", sell="11.50"):
    return FailoverCandidate(
        provider=snapshot,
        package_id=package_id,
        sell_price=Decimal(sell),
        wholesale_cost=Decimal(wholesale),
    )


class TestOrderCandidates:
    def test_priority_order_and_disabled_dropped(self, make_snapshot):
        a = make_snapshot(id=1, slug="a", failover_priority=10)
        b = make_snapshot(id=2, slug="b", failover_priority=20)
        c = make_snapshot(id=3, slug="c", failover_priority=5, enabled=False)

        ordered = order_candidates([_candidate(b, 2), _candidate(c, 3), _candidate(a, 1)])

        assert [x.provider.slug for x in ordered] == ["a", "b"]

    def test_below_margin_floor_dropped(self, make_snapshot):
        a = make_snapshot(id=1, slug="a", failover_priority=10)
        b = make_snapshot(id=2, slug="b", failover_priority=20)
        c = make_snapshot(id=3, slug="c", failover_priority=5, min_margin_percent=Decimal("10"))

        ordered = order_candidates([
            _candidate(a, 1),
            _candidate(b, 2),
            _candidate(c, 3, wholesale="10.00", sell="10.50"),
        ])

        assert [x.provider.slug for x in ordered] == ["a", "b"]

    def test_stale_providers_go_last(self, make_snapshot):
        now = datetime.utcnow()
        stale = make_snapshot(
            id=1, slug="stale", failover_priority=1, sync_interval_minutes=60,
            last_sync_at=now - timedelta(hours=3),
        )
        never = make_snapshot(id=2, slug="never", failover_priority=2, last_sync_at=None)
        fresh = make_snapshot(id=3, slug="fresh", failover_priority=50, last_sync_at=now)

        ordered = order_candidates(
            [_candidate(stale, 1), _candidate(never, 2), _candidate(fresh, 3)],
            now=now,
            staleness_multiplier=2,
        )

        assert [x.provider.slug for x in ordered] == ["fresh", "stale", "never"]
        assert [x.stale for x in ordered] == [False, True, True]

    def test_staleness_boundary_is_not_stale(self, make_snapshot):
        now = datetime.utcnow()
        provider = make_snapshot(sync_interval_minutes=60, last_sync_at=now - timedelta(hours=2))
        (only,) = order_candidates([_candidate(provider, 1)], now=now, staleness_multiplier=2)
        assert only.stale is False

    def test_one_entry_per_provider_cheapest_first(self, make_snapshot):
        a = make_snapshot(id=1, slug="a")

        ordered = order_candidates([_candidate(a, 1, wholesale="9.00", sell="10.00"), _candidate(a, 2, wholesale="8.00", sell="10.00")])

        assert [x.package_id for x in ordered] == [2]

    def test_priority_tie_breaks_on_cost(self, make_snapshot):
        a = make_snapshot(id=1, slug="a", failover_priority=10)
        b = make_snapshot(id=2, slug="b", failover_priority=10)

        ordered = order_candidates([_candidate(a, 1, wholesale="9.00"), _candidate(b, 2, wholesale="8.00")])

        assert [x.provider.slug for x in ordered] == ["b", "a"]


@pytest.mark.asyncio
async def test_select_for_package_skips_failed_provider(session_factory, catalog):
    a = await catalog.provider("a", failover_priority=10)
    b = await catalog.provider("b", failover_priority=20)
    c = await catalog.provider("c", failover_priority=30)
    us = await catalog.destination("US")
    ordered_pkg = await catalog.package(c, us)
    await catalog.package(a, us)
    await catalog.package(b, us)

    ordered = await FailoverSelector(session_factory).select_for_package(ordered_pkg.id)

    assert [x.provider.slug for x in ordered] == ["a", "b"]


@pytest.mark.asyncio
async def test_disabled_and_below_floor_providers_excluded(session_factory, catalog):
    a = await catalog.provider("a", failover_priority=10)
    b = await catalog.provider("b", failover_priority=20)
    c = await catalog.provider("c", failover_priority=1, enabled=False)
    d = await catalog.provider("d", failover_priority=2, min_margin_percent=Decimal("10"))
    us = await catalog.destination("US")
    package = await catalog.package(a, us)
    await catalog.package(b, us)
    await catalog.package(c, us)
    await catalog.package(d, us, sell_price="10.50")

    async with session_factory() as db:
        key = key_for(await db.get(UnifiedPackage, package.id))
    ordered = await FailoverSelector(session_factory).select_provider_order(key)

    assert [x.provider.slug for x in ordered] == ["a", "b"]


@pytest.mark.asyncio
async def test_other_currency_is_not_a_failover_candidate(session_factory, catalog):
    a = await catalog.provider("a", failover_priority=10)
    b = await catalog.provider("b", failover_priority=20)
    yen = await catalog.provider("yen", failover_priority=1)
    us = await catalog.destination("US")
    ordered_pkg = await catalog.package(a, us)
    await catalog.package(b, us)
    await catalog.package(yen, us, currency="JPY", wholesale_cost="1000")

    ordered = await FailoverSelector(session_factory).select_for_package(ordered_pkg.id)

    assert [x.provider.slug for x in ordered] == ["b"]


@pytest.mark.asyncio
async def test_falls_back_to_preferred_provider(session_factory, catalog):
    cheap = await catalog.provider("cheap", min_margin_percent=Decimal("20"))
    await catalog.provider("preferred", is_preferred=True, failover_priority=50)
    await catalog.provider("other", failover_priority=1)
    us = await catalog.destination("US")
    package = await catalog.package(cheap, us, sell_price="10.50")

    ordered = await FailoverSelector(session_factory).select_for_package(package.id, exclude_failed=False)

    assert [x.provider.slug for x in ordered] == ["preferred"]
    assert ordered[0].package_id is None


@pytest.mark.asyncio
async def test_nothing_available_raises(session_factory, catalog):
    only = await catalog.provider("only")
    us = await catalog.destination("US")
    package = await catalog.package(only, us)

    with pytest.raises(ServiceUnavailableError):
        await FailoverSelector(session_factory).select_for_package(package.id)


@pytest.mark.asyncio
async def test_unknown_or_unresolved_package(session_factory, catalog):
    selector = FailoverSelector(session_factory)
    with pytest.raises(NotFoundError):
        await selector.select_for_package(404)

    provider = await catalog.provider("a")
    unresolved = await catalog.package(provider)
    with pytest.raises(ValidationError):
        await selector.select_for_package(unresolved.id)
