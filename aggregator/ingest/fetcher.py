"""Paged catalog fetching with rate limiting, timeouts and retries."""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from aggregator import metrics
from aggregator.config import settings
from aggregator.errors import ProviderError
from aggregator.ingest.base import CatalogClient, CatalogPage, RawOffer
from aggregator.ingest.http_client import TransientFetchError
from aggregator.ingest.rate_limiter import RateLimiter, backoff_delay, rate_limiter
from aggregator.registry.providers import ProviderSnapshot

logger = logging.getLogger(__name__)


class CatalogFetcher:
    """
    Walk a provider's catalog page by page.

    Every call starts again from the first page. Each page attempt waits on
    the provider's rate limit and runs under a timeout; transient failures
    are retried with exponential backoff, anything else aborts the walk.
    """

    def __init__(
        self,
        client: CatalogClient,
        limiter: Optional[RateLimiter] = None,
        max_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        max_pages: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.limiter = limiter or rate_limiter
        self.max_attempts = max_attempts or settings.fetch_max_attempts
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self.backoff_base_seconds = (
            settings.fetch_backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self.backoff_max_seconds = (
            settings.fetch_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )
        self.max_pages = max_pages or settings.fetch_max_pages
        self._sleep = sleep

    async def fetch_catalog(self, provider: ProviderSnapshot) -> AsyncIterator[RawOffer]:
        """Yield every raw offer in the provider's catalog."""
        async for page in self.iter_pages(provider):
            for offer in page.offers:
                yield offer

    async def iter_pages(self, provider: ProviderSnapshot) -> AsyncIterator[CatalogPage]:
        """
        Yield catalog pages from page 1 until the provider reports no next page.

        Raises:
            ProviderError: On a non-transient failure, exhausted retries,
                or a pagination loop
        """
        token: Optional[str] = None
        seen_tokens: set[str] = set()
        page_number = 0

        while True:
            page_number += 1
            if page_number > self.max_pages:
                raise ProviderError(
                    provider.slug, "pagination_loop", f"more than {self.max_pages} pages"
                )

            page = await self.fetch_page(provider, token, page_number)
            yield page

            if page.next_token is None:
                return
            if page.next_token in seen_tokens:
                raise ProviderError(
                    provider.slug, "pagination_loop", f"page token {page.next_token!r} repeated"
                )
            seen_tokens.add(page.next_token)
            token = page.next_token

    async def fetch_page(
        self,
        provider: ProviderSnapshot,
        token: Optional[str],
        page_number: int = 1,
    ) -> CatalogPage:
        """Fetch one page, retrying transient failures."""
        last_error: Optional[TransientFetchError] = None

        for attempt in range(1, self.max_attempts + 1):
            await self.limiter.acquire(provider.slug, provider.api_rate_limit_per_hour)
            try:
                page = await asyncio.wait_for(
                    self.client.fetch_page(provider, token),
                    timeout=self.timeout_seconds,
                )
                metrics.record_page_fetch(provider.slug, success=True)
                return page
            except asyncio.TimeoutError:
                last_error = TransientFetchError(
                    f"{provider.slug}: page {page_number} timed out after {self.timeout_seconds}s"
                )
                reason = "timeout"
            except TransientFetchError as e:
                last_error = e
                reason = e.code
            except ProviderError:
                metrics.record_page_fetch(provider.slug, success=False)
                raise

            metrics.record_page_fetch(provider.slug, success=False)
            if attempt >= self.max_attempts:
                break

            delay = backoff_delay(attempt, self.backoff_base_seconds, self.backoff_max_seconds)
            if last_error.retry_after is not None:
                delay = max(delay, last_error.retry_after)
                self.limiter.set_cooldown(provider.slug, last_error.retry_after)
            metrics.record_fetch_retry(provider.slug, reason)
            logger.warning(
                f"{provider.slug} page {page_number} attempt {attempt}/{self.max_attempts} "
                f"failed ({last_error}); retrying in {delay:.1f}s"
            )
            await self._sleep(delay)

        code = last_error.code if last_error else "unknown"
        raise ProviderError(
            provider.slug,
            f"transient_exhausted:{code}",
            f"page {page_number} failed after {self.max_attempts} attempts: {last_error}",
        )
