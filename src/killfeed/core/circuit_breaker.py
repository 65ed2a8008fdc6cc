"""
Circuit breaker for external services.

States:
- CLOSED: Normal operation. Consecutive failed calls are counted.
- OPEN: The service is considered down. Calls fail fast with CircuitOpenError
  until the cooldown has elapsed.
- HALF_OPEN: Cooldown elapsed. Exactly one trial call is admitted; its outcome
  closes the circuit again or re-opens it with a fresh cooldown.

A breaker wraps a whole retried call, so one exhausted retry sequence counts
as one failure. Client errors (404, schema mismatch) and cancellations say
nothing about the health of the service and are not counted.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Optional, TypeVar

from .cancellation import OperationCancelledError
from .logging import get_logger
from .retry import NonRetryableFeedError

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN = 60.0  # seconds


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling a service whose circuit is open."""

    def __init__(self, service_name: str, retry_in: float) -> None:
        self.service_name = service_name
        self.retry_in = max(0.0, retry_in)
        super().__init__(
            f"Circuit breaker OPEN for {service_name}: cooling down for {self.retry_in:.1f}s"
        )


def default_is_failure(exc: BaseException) -> bool:
    """Decide whether an exception counts against the service's health."""
    if isinstance(exc, (OperationCancelledError, CircuitOpenError, NonRetryableFeedError)):
        return False
    return True


class CircuitBreaker:
    """
    Gatekeeper for calls to one service.

    Args:
        service_name: Service label for logs and errors
        failure_threshold: Consecutive failures that open the circuit
        cooldown: Seconds the circuit stays open before a trial call
        clock: Monotonic clock (injectable for tests)
        is_failure: Predicate deciding which exceptions count as failures
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] = default_is_failure,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.is_failure = is_failure
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt_time: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt_time(self) -> Optional[float]:
        """Clock reading at which an open circuit admits its trial call."""
        return self._next_attempt_time

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (operation not invoked)
            Exception: Whatever the operation raised
        """
        is_trial = self._admit()
        try:
            result = await operation()
        except Exception as exc:
            if self.is_failure(exc):
                self._record_failure(exc)
            elif not isinstance(exc, OperationCancelledError):
                # The service answered; only the request was bad
                self._record_success()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False
        self._record_success()
        return result

    def _admit(self) -> bool:
        """Check the state; returns True when this call is the half-open trial."""
        if self._state == CircuitState.OPEN:
            now = self._clock()
            assert self._next_attempt_time is not None
            if now < self._next_attempt_time:
                raise CircuitOpenError(self.service_name, self._next_attempt_time - now)
            self._transition(CircuitState.HALF_OPEN, "cooldown elapsed, admitting trial call")

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.service_name, 0.0)
            self._trial_in_flight = True
            return True

        return False

    def _record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED, "trial call succeeded")
            self._next_attempt_time = None
        self._failure_count = 0

    def _record_failure(self, exc: BaseException) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._trip(f"trial call failed: {exc}")
            return

        self._failure_count += 1
        if self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            self._trip(f"{self._failure_count} consecutive failures, last: {exc}")

    def _trip(self, reason: str) -> None:
        self._next_attempt_time = self._clock() + self.cooldown
        self._transition(CircuitState.OPEN, reason)

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit %s: %s -> %s | %s",
            self.service_name,
            old_state.value,
            new_state.value,
            reason,
            extra={"event": "circuit_transition", "service": self.service_name},
        )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt_time = None
        self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        retry_in = None
        if self._state == CircuitState.OPEN and self._next_attempt_time is not None:
            retry_in = round(max(0.0, self._next_attempt_time - self._clock()), 3)
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_in": retry_in,
        }


class CircuitBreakerRegistry:
    """One CircuitBreaker per service name, created on first use."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, service_name: str) -> CircuitBreaker:
        breaker = self._breakers.get(service_name)
        if breaker is None:
            breaker = CircuitBreaker(
                service_name,
                failure_threshold=self.failure_threshold,
                cooldown=self.cooldown,
                clock=self._clock,
            )
            self._breakers[service_name] = breaker
        return breaker

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}
