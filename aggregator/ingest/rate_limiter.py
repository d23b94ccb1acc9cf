"""Per-provider request rate limiting for catalog fetches."""

import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600.0


class RateLimiter:
    """Sliding one-hour window limiter, one window and lock per provider.

    Never admits more than ``limit_per_hour`` acquisitions for a key within
    any window of ``window_seconds``. Keys are independent, so a throttled
    provider never delays another provider's sync.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        window_seconds: float = HOUR_SECONDS,
    ):
        self._clock = clock
        self._sleep = sleep
        self.window_seconds = window_seconds
        self.windows: dict[str, deque[float]] = defaultdict(deque)
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.cooldowns: dict[str, float] = {}  # key -> cooldown until (clock time)

    def _prune(self, key: str, now: float) -> deque[float]:
        window = self.windows[key]
        while window and now - window[0] >= self.window_seconds:
            window.popleft()
        return window

    async def acquire(self, key: str, limit_per_hour: int) -> float:
        """
        Wait until a request for ``key`` is allowed, then record it.

        Args:
            key: Provider slug
            limit_per_hour: Maximum requests per window

        Returns:
            Seconds spent waiting
        """
        if limit_per_hour <= 0:
            raise ValueError(f"limit_per_hour must be positive, got {limit_per_hour}")

        waited = 0.0
        async with self.locks[key]:
            while True:
                now = self._clock()

                cooldown_until = self.cooldowns.get(key, 0.0)
                if now < cooldown_until:
                    wait = cooldown_until - now
                    logger.debug(f"{key} in cooldown, waiting {wait:.1f}s")
                    await self._sleep(wait)
                    waited += wait
                    continue

                window = self._prune(key, now)
                if len(window) < limit_per_hour:
                    window.append(now)
                    return waited

                wait = window[0] + self.window_seconds - now
                logger.info(
                    f"Rate limit reached for {key} ({limit_per_hour}/window), waiting {wait:.1f}s"
                )
                await self._sleep(wait)
                waited += wait

    def set_cooldown(self, key: str, seconds: float) -> None:
        """Block requests for ``key`` for ``seconds`` (e.g. after a 429 with Retry-After)."""
        self.cooldowns[key] = self._clock() + seconds

    def remaining(self, key: str, limit_per_hour: int) -> int:
        """Requests still allowed in the current window."""
        return max(0, limit_per_hour - len(self._prune(key, self._clock())))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self.windows.clear()
            self.cooldowns.clear()
        else:
            self.windows.pop(key, None)
            self.cooldowns.pop(key, None)


def backoff_delay(attempt: int, base_seconds: float = 1.0, max_seconds: float = 60.0) -> float:
    """
    Exponential backoff delay.

    Args:
        attempt: Attempt number that just failed (1-based)
        base_seconds: Delay after the first failure
        max_seconds: Upper bound

    Returns:
        base * 2^(attempt-1), capped at max_seconds
    """
    return min(base_seconds * (2 ** (max(attempt, 1) - 1)), max_seconds)


# Global rate limiter instance
rate_limiter = RateLimiter()
