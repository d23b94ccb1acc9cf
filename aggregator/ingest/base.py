"""Shared types for provider catalog clients."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol

if TYPE_CHECKING:
    from aggregator.registry.providers import ProviderSnapshot

PROVIDER_AIRALO = "airalo"
PROVIDER_ESIM_ACCESS = "esim-access"
PROVIDER_ESIM_GO = "esim-go"


@dataclass(frozen=True)
class RawOffer:
    """Offer exactly as a provider returned it.

    ``provider`` is the slug tag that tells the normalizer which shape
    ``payload`` has. Nothing downstream of the normalizer sees a RawOffer.
    """

    provider: str
    native_id: str
    payload: Mapping[str, Any]


@dataclass
class CatalogPage:
    """One page of a provider catalog."""

    offers: list[RawOffer] = field(default_factory=list)
    next_token: Optional[str] = None  # None on the last page


class CatalogClient(Protocol):
    """Capability to fetch a single catalog page from one provider."""

    async def fetch_page(
        self, provider: "ProviderSnapshot", page_token: Optional[str]
    ) -> CatalogPage:
        """
        Fetch one page.

        Args:
            provider: Provider configuration snapshot for this sync run
            page_token: Token returned by the previous page, None for page 1

        Raises:
            TransientFetchError: Retryable failure (network, timeout, 5xx, 429)
            ProviderError: Non-transient failure (auth, other 4xx)
        """
        ...
