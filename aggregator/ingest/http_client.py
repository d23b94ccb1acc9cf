"""HTTP catalog client with status-aware error classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

import httpx

from aggregator.config import settings
from aggregator.errors import ProviderError
from aggregator.ingest.base import CatalogPage, RawOffer

if TYPE_CHECKING:
    from aggregator.registry.providers import ProviderSnapshot

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.ReadError,
)


class TransientFetchError(RuntimeError):
    """Retryable page fetch failure (network, timeout, 408, 429, 5xx)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def code(self) -> str:
        return str(self.status_code) if self.status_code else "network"


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Retry-After header in seconds, if present and numeric."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: httpx.Response, provider_slug: str) -> None:
    """
    Raise for non-2xx responses.

    Raises:
        TransientFetchError: 408, 429 and 5xx
        ProviderError: Any other 4xx (401/403 are auth failures)
    """
    sc = response.status_code
    if 200 <= sc < 300:
        return
    if sc == 429:
        raise TransientFetchError(
            f"{provider_slug}: rate limited", status_code=sc, retry_after=parse_retry_after(response)
        )
    if sc == 408 or sc >= 500:
        raise TransientFetchError(f"{provider_slug}: HTTP {sc}", status_code=sc)
    if sc in (401, 403):
        raise ProviderError(provider_slug, str(sc), f"authentication rejected (HTTP {sc})")
    raise ProviderError(provider_slug, str(sc), f"HTTP {sc} for {response.request.url}")


@dataclass(frozen=True)
class PageLayout:
    """How one provider pages its catalog.

    ``items`` extracts offer dicts from a decoded body; ``next_token`` gets
    (body, current page number, item count, page size) and returns the next
    token or None on the last page.
    """

    path: str
    native_id_field: str
    items: Callable[[Any], list[dict]]
    next_token: Callable[[Any, int, int, int], Optional[str]]
    method: str = "GET"
    page_param: Optional[str] = "page"
    page_size_param: Optional[str] = "limit"
    body: Optional[dict] = None
    auth_header: str = "Authorization"
    auth_scheme: Optional[str] = "Bearer"
    error_code: Optional[Callable[[Any], Optional[str]]] = None
    extra_params: dict[str, str] = field(default_factory=dict)


class ProviderHttpClient:
    """Single-attempt page fetcher for one provider; retries live in the fetcher."""

    def __init__(
        self,
        layout: PageLayout,
        http: httpx.AsyncClient,
        api_token: Optional[str] = None,
        page_size: Optional[int] = None,
    ):
        self.layout = layout
        self.http = http
        self.api_token = api_token
        self.page_size = page_size or settings.fetch_page_size

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            scheme = self.layout.auth_scheme
            headers[self.layout.auth_header] = f"{scheme} {self.api_token}" if scheme else self.api_token
        return headers

    async def fetch_page(self, provider: "ProviderSnapshot", page_token: Optional[str]) -> CatalogPage:
        """
        Fetch one catalog page.

        Args:
            provider: Provider snapshot (supplies base URL and slug)
            page_token: Page number as a string, None for the first page

        Raises:
            TransientFetchError: Retryable failure
            ProviderError: Non-transient failure
        """
        if not provider.api_base_url:
            raise ProviderError(provider.slug, "config", "no API base URL configured")

        layout = self.layout
        page = int(page_token) if page_token else 1
        url = provider.api_base_url.rstrip("/") + layout.path
        params = dict(layout.extra_params)
        if layout.page_param:
            params[layout.page_param] = str(page)
        if layout.page_size_param:
            params[layout.page_size_param] = str(self.page_size)

        try:
            response = await self.http.request(
                layout.method,
                url,
                params=params,
                json=layout.body,
                headers=self._headers(),
            )
        except RETRYABLE_EXC as e:
            raise TransientFetchError(f"{provider.slug}: {type(e).__name__}: {e}")

        classify_response(response, provider.slug)

        try:
            body = response.json()
        except ValueError:
            raise TransientFetchError(f"{provider.slug}: invalid JSON on page {page}", status_code=response.status_code)

        if layout.error_code:
            code = layout.error_code(body)
            if code:
                raise ProviderError(provider.slug, code, f"catalog request rejected ({code})")

        items = layout.items(body)
        offers = [
            RawOffer(
                provider=provider.slug,
                native_id=str(item.get(layout.native_id_field) or ""),
                payload=item,
            )
            for item in items
        ]
        next_token = layout.next_token(body, page, len(items), self.page_size)
        logger.debug(f"{provider.slug} page {page}: {len(offers)} offers, next={next_token}")
        return CatalogPage(offers=offers, next_token=next_token)
