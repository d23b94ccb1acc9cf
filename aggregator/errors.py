"""Error taxonomy shared by the catalog, pricing and bracket services.

Every error carries a human-readable message and renders to a dict for the
HTTP layer, which maps each class to a status code in ``aggregator.main``.
"""

from typing import Any, Optional


class AggregatorError(Exception):
    """Base class for errors surfaced to admin callers."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_type, "message": self.message}


class ValidationError(AggregatorError):
    """Raised for malformed input such as a bad margin override or step size."""

    status_code = 422
    error_type = "validation_error"


class NotFoundError(AggregatorError):
    """Raised when a provider, package or destination reference is unknown."""

    status_code = 404
    error_type = "not_found"


class ProviderError(AggregatorError):
    """Non-transient upstream failure that aborts a provider sync.

    Args:
        provider_slug: Provider whose catalog failed
        upstream_code: HTTP status or symbolic failure code reported upstream
        message: Optional detail, defaults to a generic description
    """

    status_code = 502
    error_type = "provider_error"

    def __init__(
        self,
        provider_slug: str,
        upstream_code: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.provider_slug = provider_slug
        self.upstream_code = upstream_code
        detail = message or f"Upstream failure ({upstream_code or 'unknown'})"
        super().__init__(f"{provider_slug}: {detail}")

    @property
    def is_auth_failure(self) -> bool:
        return self.upstream_code in ("401", "403")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider_slug
        data["upstream_code"] = self.upstream_code
        return data


class ServiceUnavailableError(AggregatorError):
    """Raised when no eligible provider remains for fulfillment."""

    status_code = 503
    error_type = "service_unavailable"


class ConflictError(AggregatorError):
    """Raised when a single-flight run is already in progress for a scope."""

    status_code = 409
    error_type = "conflict"

    def __init__(self, scope: str, message: Optional[str] = None):
        self.scope = scope
        super().__init__(message or f"A run is already in progress for '{scope}'")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["scope"] = self.scope
        return data
