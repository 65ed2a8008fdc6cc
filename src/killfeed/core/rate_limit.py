"""
Per-service request spacing.

Each external service gets one RateLimiter that enforces a minimum delay
between consecutive requests, no matter how many tasks share it. The limiter
holds an asyncio.Lock across check-sleep-record, so two concurrent callers can
never both observe "enough time has passed" and fire together.

Limiters are handed out by a RateLimiterRegistry that the runtime constructs
once and injects into both HTTP clients.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from .cancellation import CancelToken, cancellable_sleep
from .logging import get_logger

logger = get_logger(__name__)

ZKILLBOARD_SERVICE = "zkillboard"
ESI_SERVICE = "esi"
REDISQ_SERVICE = "redisq"

# Minimum spacing per known service (seconds)
DEFAULT_MIN_DELAYS: dict[str, float] = {
    ZKILLBOARD_SERVICE: 1.0,  # zKillboard asks for at most one request per second
    ESI_SERVICE: 0.1,
    REDISQ_SERVICE: 1.0,
}
FALLBACK_MIN_DELAY = 1.0


class RateLimiter:
    """
    Enforces a minimum delay between requests to one service.

    Args:
        service_name: Service label for logs and stats
        min_delay: Minimum seconds between the start of consecutive requests
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function used when no token is given (injectable for tests)
    """

    def __init__(
        self,
        service_name: str,
        min_delay: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if min_delay < 0:
            raise ValueError("min_delay must be non-negative")
        self.service_name = service_name
        self.min_delay = min_delay
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self, token: CancelToken | None = None) -> None:
        """
        Wait until a request may be issued, then record it as issued.

        Raises:
            OperationCancelledError: If the token fires while waiting
        """
        async with self._lock:
            delay = self.time_until_next()
            if delay > 0:
                logger.debug("Rate limiting %s for %.3fs", self.service_name, delay)
                if self._sleep is not None:
                    await self._sleep(delay)
                    if token is not None:
                        token.raise_if_cancelled()
                else:
                    await cancellable_sleep(delay, token)
            elif token is not None:
                token.raise_if_cancelled()
            self._last_request = self._clock()

    def time_until_next(self) -> float:
        """Seconds until the next request may proceed (0 if it may proceed now)."""
        if self._last_request is None:
            return 0.0
        elapsed = self._clock() - self._last_request
        return max(0.0, self.min_delay - elapsed)

    def can_proceed(self) -> bool:
        return self.time_until_next() == 0.0

    def reset(self) -> None:
        self._last_request = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "min_delay": self.min_delay,
            "can_proceed": self.can_proceed(),
            "time_until_next": round(self.time_until_next(), 3),
        }


class RateLimiterRegistry:
    """
    One RateLimiter per service name, created on first use.

    Args:
        min_delays: Per-service overrides merged over DEFAULT_MIN_DELAYS
        default_min_delay: Spacing for services with no configured delay
        clock: Clock shared by every limiter the registry creates
    """

    def __init__(
        self,
        min_delays: dict[str, float] | None = None,
        default_min_delay: float = FALLBACK_MIN_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_delays = {**DEFAULT_MIN_DELAYS, **(min_delays or {})}
        self._default_min_delay = default_min_delay
        self._clock = clock
        self._limiters: dict[str, RateLimiter] = {}

    def get(self, service_name: str, min_delay: float | None = None) -> RateLimiter:
        """
        Get or create the limiter for ``service_name``.

        ``min_delay`` only applies when the limiter is created; an existing
        limiter keeps its spacing.
        """
        limiter = self._limiters.get(service_name)
        if limiter is None:
            if min_delay is None:
                min_delay = self._min_delays.get(service_name, self._default_min_delay)
            limiter = RateLimiter(service_name, min_delay, clock=self._clock)
            self._limiters[service_name] = limiter
            logger.debug("Created rate limiter for %s with %.3fs delay", service_name, min_delay)
        return limiter

    def reset(self, service_name: str) -> None:
        limiter = self._limiters.get(service_name)
        if limiter is not None:
            limiter.reset()

    def reset_all(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: limiter.snapshot() for name, limiter in self._limiters.items()}
