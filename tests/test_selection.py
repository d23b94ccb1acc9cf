"""Tests for storefront package selection."""

import pytest
from sqlalchemy import select

from aggregator.compare.engine import PriceComparisonEngine
from aggregator.compare.selection import MODE_AUTO, MODE_MANUAL, PackageSelectionService
from aggregator.db.models import UnifiedPackage
from aggregator.errors import NotFoundError, ValidationError


async def _enabled(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(UnifiedPackage.id).where(UnifiedPackage.is_enabled.is_(True)))
        return set(result.scalars().all())


@pytest.mark.asyncio
async def test_auto_mode_shows_only_best_prices(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    expensive = await catalog.package(airalo, us, sell_price="5.00", is_enabled=True)
    cheap = await catalog.package(esim_go, us, sell_price="4.50")
    await PriceComparisonEngine(session_factory).run_comparison()

    service = PackageSelectionService(session_factory, mode=MODE_AUTO)
    result = await service.run_selection()

    assert result.packages_enabled == 1
    assert result.packages_disabled == 1
    assert await _enabled(session_factory) == {cheap.id}
    assert expensive.id not in await _enabled(session_factory)

    again = await service.run_selection()
    assert again.packages_enabled == again.packages_disabled == 0


@pytest.mark.asyncio
async def test_manual_override_is_left_alone(session_factory, catalog):
    airalo = await catalog.provider("airalo")
    esim_go = await catalog.provider("esim-go")
    us = await catalog.destination("US")
    pinned = await catalog.package(airalo, us, sell_price="5.00", is_enabled=True, manual_override=True)
    cheap = await catalog.package(esim_go, us, sell_price="4.50")
    await PriceComparisonEngine(session_factory).run_comparison()

    result = await PackageSelectionService(session_factory, mode=MODE_AUTO).run_selection()

    assert result.manual_overrides == 1
    assert await _enabled(session_factory) == {pinned.id, cheap.id}


@pytest.mark.asyncio
async def test_group_without_best_price_falls_back_to_preferred(session_factory, catalog):
    other = await catalog.provider("other", failover_priority=1)
    preferred = await catalog.provider("preferred", is_preferred=True)
    us = await catalog.destination("US")
    await catalog.package(other, us, sell_price="4.00")
    fallback = await catalog.package(preferred, us, sell_price="5.00")

    result = await PackageSelectionService(session_factory, mode=MODE_AUTO).run_selection()

    assert result.fallback_enabled == 1
    assert await _enabled(session_factory) == {fallback.id}


@pytest.mark.asyncio
async def test_hidden_winner_falls_back_to_preferred(session_factory, catalog):
    cheap = await catalog.provider("cheap")
    preferred = await catalog.provider("preferred", is_preferred=True)
    us = await catalog.destination("US")
    winner = await catalog.package(cheap, us, sell_price="4.00")
    fallback = await catalog.package(preferred, us, sell_price="5.00")
    await PriceComparisonEngine(session_factory).run_comparison()
    service = PackageSelectionService(session_factory, mode=MODE_AUTO)

    await service.set_manual_override(winner.id, False)
    await service.run_selection()

    assert await _enabled(session_factory) == {fallback.id}


@pytest.mark.asyncio
async def test_no_fallback_without_preferred_provider(session_factory, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    await catalog.package(provider, us)

    result = await PackageSelectionService(session_factory, mode=MODE_AUTO).run_selection()

    assert result.fallback_enabled == 0
    assert await _enabled(session_factory) == set()


@pytest.mark.asyncio
async def test_inactive_packages_are_hidden(session_factory, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    gone = await catalog.package(provider, us, active=False, is_best_price=True, is_enabled=True)

    await PackageSelectionService(session_factory, mode=MODE_AUTO).run_selection()

    assert gone.id not in await _enabled(session_factory)


@pytest.mark.asyncio
async def test_manual_mode_changes_nothing(session_factory, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    shown = await catalog.package(provider, us, is_enabled=True)

    result = await PackageSelectionService(session_factory, mode=MODE_MANUAL).run_selection()

    assert result.mode == MODE_MANUAL
    assert await _enabled(session_factory) == {shown.id}


@pytest.mark.asyncio
async def test_selection_keeps_updated_at(session_factory, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    package = await catalog.package(provider, us, is_best_price=True)

    await PackageSelectionService(session_factory, mode=MODE_AUTO).run_selection()

    async with session_factory() as db:
        stored = await db.get(UnifiedPackage, package.id)
    assert stored.is_enabled is True
    assert stored.updated_at == package.updated_at


@pytest.mark.asyncio
async def test_clear_override_follows_best_price(session_factory, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    package = await catalog.package(provider, us, is_best_price=True)
    service = PackageSelectionService(session_factory, mode=MODE_AUTO)

    hidden = await service.set_manual_override(package.id, False)
    assert hidden.manual_override is True
    assert hidden.is_enabled is False

    released = await service.clear_manual_override(package.id)
    assert released.manual_override is False
    assert released.is_enabled is True

    stats = await service.get_statistics()
    assert stats.mode == MODE_AUTO
    assert stats.enabled_packages == 1
    assert stats.manual_overrides == 0

    with pytest.raises(NotFoundError):
        await service.set_manual_override(404, True)


def test_unknown_mode_rejected():
    with pytest.raises(ValidationError):
        PackageSelectionService(mode="sometimes").current_mode
