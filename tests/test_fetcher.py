"""Tests for paged catalog fetching with retries."""

import asyncio

import pytest

from aggregator.errors import ProviderError
from aggregator.ingest.base import CatalogPage, RawOffer
from aggregator.ingest.fetcher import CatalogFetcher
from aggregator.ingest.http_client import TransientFetchError


def _page(native_ids, next_token=None):
    return CatalogPage(
        offers=[RawOffer("provider", nid, {"id": nid}) for nid in native_ids],
        next_token=next_token,
    )


class ScriptedClient:
    """Replays queued results per page token; exceptions are raised."""

    def __init__(self, script):
        self.script = {token: list(results) for token, results in script.items()}
        self.calls: list = []

    async def fetch_page(self, provider, page_token):
        self.calls.append(page_token)
        result = self.script[page_token].pop(0)
        if isinstance(result, BaseException):
            raise result
        if result == "hang":
            await asyncio.sleep(10)
        return result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_fetcher(fast_limiter, sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    def factory(client, **kwargs):
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("timeout_seconds", 5)
        kwargs.setdefault("backoff_base_seconds", 1.0)
        kwargs.setdefault("backoff_max_seconds", 30.0)
        return CatalogFetcher(client, limiter=fast_limiter, sleep=record_sleep, **kwargs)

    return factory


async def _collect(fetcher, provider):
    return [offer.native_id async for offer in fetcher.fetch_catalog(provider)]


@pytest.mark.asyncio
async def test_walks_all_pages(make_fetcher, make_snapshot):
    client = ScriptedClient({
        None: [_page(["a", "b"], "2")],
        "2": [_page(["c"], "3")],
        "3": [_page(["d"])],
    })
    fetcher = make_fetcher(client)

    assert await _collect(fetcher, make_snapshot()) == ["a", "b", "c", "d"]
    assert client.calls == [None, "2", "3"]


@pytest.mark.asyncio
async def test_retries_transient_then_succeeds(make_fetcher, make_snapshot, sleeps):
    client = ScriptedClient({
        None: [TransientFetchError("boom", status_code=503), _page(["a"])],
    })
    fetcher = make_fetcher(client)

    assert await _collect(fetcher, make_snapshot()) == ["a"]
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_backoff_grows_then_exhausts(make_fetcher, make_snapshot, sleeps):
    client = ScriptedClient({
        None: [TransientFetchError("boom", status_code=500) for _ in range(3)],
    })
    fetcher = make_fetcher(client)

    with pytest.raises(ProviderError) as exc:
        await _collect(fetcher, make_snapshot())

    assert exc.value.upstream_code == "transient_exhausted:500"
    assert sleeps == [1.0, 2.0]
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried(make_fetcher, make_snapshot, sleeps):
    client = ScriptedClient({
        None: [_page(["a"], "2")],
        "2": [ProviderError("provider", "401", "authentication rejected")],
    })
    fetcher = make_fetcher(client)

    seen = []
    with pytest.raises(ProviderError) as exc:
        async for offer in fetcher.fetch_catalog(make_snapshot()):
            seen.append(offer.native_id)

    assert exc.value.is_auth_failure
    assert seen == ["a"]
    assert sleeps == []
    assert client.calls == [None, "2"]


@pytest.mark.asyncio
async def test_timeout_counts_as_transient(make_fetcher, make_snapshot, sleeps):
    client = ScriptedClient({None: ["hang", _page(["a"])]})
    fetcher = make_fetcher(client, timeout_seconds=0.01)

    assert await _collect(fetcher, make_snapshot()) == ["a"]
    assert len(sleeps) == 1


@pytest.mark.asyncio
async def test_repeated_token_is_a_pagination_loop(make_fetcher, make_snapshot):
    client = ScriptedClient({
        None: [_page(["a"], "2")],
        "2": [_page(["b"], "2")],
    })
    fetcher = make_fetcher(client)

    with pytest.raises(ProviderError) as exc:
        await _collect(fetcher, make_snapshot())
    assert exc.value.upstream_code == "pagination_loop"


@pytest.mark.asyncio
async def test_page_cap_is_a_pagination_loop(make_fetcher, make_snapshot):
    client = ScriptedClient({
        None: [_page(["a"], "2")],
        "2": [_page(["b"], "3")],
        "3": [_page(["c"], "4")],
    })
    fetcher = make_fetcher(client, max_pages=2)

    with pytest.raises(ProviderError) as exc:
        await _collect(fetcher, make_snapshot())
    assert exc.value.upstream_code == "pagination_loop"


@pytest.mark.asyncio
async def test_every_fetch_restarts_from_first_page(make_fetcher, make_snapshot):
    client = ScriptedClient({
        None: [_page(["a"], "2"), _page(["a"])],
        "2": [TransientFetchError("boom", status_code=502) for _ in range(3)],
    })
    fetcher = make_fetcher(client)

    with pytest.raises(ProviderError):
        await _collect(fetcher, make_snapshot())

    assert await _collect(fetcher, make_snapshot()) == ["a"]
    assert client.calls[0] is None
    assert client.calls[-1] is None


@pytest.mark.asyncio
async def test_each_attempt_takes_a_rate_limit_slot(fast_limiter, make_fetcher, make_snapshot):
    client = ScriptedClient({
        None: [TransientFetchError("boom", status_code=503), _page(["a"])],
    })
    fetcher = make_fetcher(client)
    provider = make_snapshot(api_rate_limit_per_hour=10)

    await _collect(fetcher, provider)

    assert fast_limiter.remaining(provider.slug, 10) == 8
