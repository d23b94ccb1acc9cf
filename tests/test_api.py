"""Tests for the admin HTTP routes."""

from contextlib import asynccontextmanager
from decimal import Decimal

import httpx
import pytest

from aggregator.api.deps import get_database, get_task_runner
from aggregator.errors import ConflictError
from aggregator.main import app
from aggregator.worker.tasks import TaskRunner


class InMemoryLockManager:
    def __init__(self):
        self.held: set[str] = set()

    @asynccontextmanager
    async def single_flight(self, scope, ttl_seconds=None):
        if scope in self.held:
            raise ConflictError(scope)
        self.held.add(scope)
        try:
            yield scope
        finally:
            self.held.discard(scope)

    async def get_lock_info(self, scope):
        return {"run_id": "elsewhere"} if scope in self.held else None

    async def close(self):
        pass


@pytest.fixture
def locks():
    return InMemoryLockManager()


@pytest.fixture
async def client(session_factory, locks):
    runner = TaskRunner(session_factory=session_factory, lock_manager=locks, clients={})

    async def override_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_task_runner] = lambda: runner
    app.dependency_overrides[get_database] = override_database
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_list_and_get_providers(client, catalog):
    provider = await catalog.provider("airalo")

    response = await client.get("/api/providers")
    assert response.status_code == 200
    assert [p["slug"] for p in response.json()] == ["airalo"]

    response = await client.get(f"/api/providers/{provider.id}")
    assert response.json()["is_syncing"] is False

    response = await client.get("/api/providers/404")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_margin_update_reprices(client, catalog):
    provider = await catalog.provider("airalo", min_margin_percent=Decimal("10"))
    us = await catalog.destination("US")
    await catalog.package(provider, us, wholesale_cost="10.00")

    response = await client.patch(
        f"/api/providers/{provider.id}/margin", json={"pricing_margin_percent": "20"}
    )
    assert response.status_code == 200
    assert response.json()["packages_repriced"] == 1

    response = await client.patch(
        f"/api/providers/{provider.id}/margin", json={"pricing_margin_percent": "5"}
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_comparison_and_failover(client, catalog):
    a = await catalog.provider("a", failover_priority=10)
    b = await catalog.provider("b", failover_priority=20)
    us = await catalog.destination("US")
    ordered = await catalog.package(a, us, sell_price="5.00")
    await catalog.package(b, us, sell_price="4.00")

    response = await client.post("/api/catalog/comparison")
    assert response.status_code == 200
    assert response.json()["best_price_packages"] == 1

    response = await client.get(f"/api/catalog/packages/{ordered.id}/failover")
    assert response.status_code == 200
    assert [c["provider_slug"] for c in response.json()] == ["b"]


@pytest.mark.asyncio
async def test_comparison_conflict(client, locks):
    locks.held.add("comparison")

    response = await client.post("/api/catalog/comparison")

    assert response.status_code == 409
    assert response.json()["scope"] == "comparison"


@pytest.mark.asyncio
async def test_bracket_preview_and_generate(client, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    await catalog.package(provider, us, sell_price="4.30")
    await catalog.package(provider, us, sell_price="19.90")

    response = await client.post("/api/brackets/preview", json={"currency": "USD", "step_size": "5"})
    assert response.status_code == 200
    assert len(response.json()["brackets"]) == 4

    response = await client.post("/api/brackets/generate", json={"currency": "USD", "step_size": "5"})
    assert response.json()["created"] == 4

    response = await client.get("/api/brackets", params={"currency": "USD"})
    assert len(response.json()) == 4

    response = await client.post("/api/brackets/preview", json={"currency": "USD", "step_size": "0"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_submit_without_store_credentials(client):
    response = await client.post("/api/brackets/USD/submit")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_trigger_sync_conflicts_with_lock_held_elsewhere(client, catalog, locks):
    provider = await catalog.provider("airalo")
    locks.held.add(f"sync:{provider.id}")

    response = await client.post(f"/api/providers/{provider.id}/sync")

    assert response.status_code == 409
    assert response.json()["scope"] == f"sync:{provider.id}"


@pytest.mark.asyncio
async def test_visibility_pin_and_selection(client, catalog):
    provider = await catalog.provider("airalo")
    us = await catalog.destination("US")
    package = await catalog.package(provider, us, is_best_price=True)

    response = await client.put(f"/api/catalog/packages/{package.id}/visibility", json={"is_enabled": False})
    assert response.status_code == 200
    assert response.json()["manual_override"] is True
    assert response.json()["is_enabled"] is False

    response = await client.post("/api/catalog/selection")
    assert response.status_code == 200
    assert response.json()["manual_overrides"] == 1

    response = await client.put(f"/api/catalog/packages/{package.id}/visibility", json={"is_enabled": None})
    assert response.json()["is_enabled"] is True

    response = await client.get("/api/catalog/selection/stats")
    assert response.json()["enabled_packages"] == 1
