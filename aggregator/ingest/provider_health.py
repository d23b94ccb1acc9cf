"""Provider error tracking and alerting.

Counts failures per provider and error type, and raises a critical log
alert once a provider keeps failing, with a cooldown so a broken provider
does not flood the logs.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from aggregator.config import settings

logger = logging.getLogger(__name__)

ERROR_API_FAILURE = "api_failure"
ERROR_RATE_LIMIT = "rate_limit"
ERROR_SYNC_FAILURE = "sync_failure"
ERROR_AUTH_FAILURE = "auth_failure"

ERROR_TYPES = (ERROR_API_FAILURE, ERROR_RATE_LIMIT, ERROR_SYNC_FAILURE, ERROR_AUTH_FAILURE)


@dataclass
class ProviderHealth:
    """Error state for a single provider."""
    provider: str
    consecutive_errors: int = 0
    total_errors: int = 0
    errors_by_type: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_alert_at: Optional[datetime] = None


class ProviderErrorTracker:
    """Tracks provider failures for admin display and alerting."""

    def __init__(
        self,
        alert_threshold: Optional[int] = None,
        alert_cooldown_minutes: Optional[int] = None,
    ):
        self.alert_threshold = alert_threshold or settings.provider_error_alert_threshold
        self.alert_cooldown = timedelta(
            minutes=alert_cooldown_minutes
            if alert_cooldown_minutes is not None
            else settings.provider_error_alert_cooldown_minutes
        )
        self._health: Dict[str, ProviderHealth] = {}

    def _get(self, provider: str) -> ProviderHealth:
        if provider not in self._health:
            self._health[provider] = ProviderHealth(provider=provider)
        return self._health[provider]

    def record_error(
        self,
        provider: str,
        error_type: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record a provider failure.

        Args:
            provider: Provider slug
            error_type: One of ERROR_TYPES
            message: Error detail
            now: Override for the current time

        Returns:
            True if this error triggered an alert
        """
        if error_type not in ERROR_TYPES:
            raise ValueError(f"Unknown provider error type: {error_type}")

        now = now or datetime.utcnow()
        health = self._get(provider)
        health.consecutive_errors += 1
        health.total_errors += 1
        health.errors_by_type[error_type] += 1
        health.last_error = message
        health.last_error_at = now

        if health.consecutive_errors < self.alert_threshold:
            return False
        if health.last_alert_at and now - health.last_alert_at < self.alert_cooldown:
            return False

        health.last_alert_at = now
        logger.critical(
            f"Provider {provider} has failed {health.consecutive_errors} times in a row "
            f"(latest {error_type}: {message})"
        )
        return True

    def mark_success(self, provider: str, now: Optional[datetime] = None) -> None:
        """Reset a provider's consecutive error count."""
        health = self._get(provider)
        if health.consecutive_errors:
            logger.info(f"Provider {provider} recovered after {health.consecutive_errors} errors")
        health.consecutive_errors = 0
        health.errors_by_type = defaultdict(int)
        health.last_success_at = now or datetime.utcnow()

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every tracked provider."""
        return {
            provider: {
                "consecutive_errors": health.consecutive_errors,
                "total_errors": health.total_errors,
                "errors_by_type": dict(health.errors_by_type),
                "last_error": health.last_error,
                "last_error_at": health.last_error_at.isoformat() if health.last_error_at else None,
                "last_success_at": health.last_success_at.isoformat() if health.last_success_at else None,
            }
            for provider, health in self._health.items()
        }


# Global tracker instance
provider_error_tracker = ProviderErrorTracker()
