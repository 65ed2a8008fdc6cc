"""
Killfeed Retry Logic

Resilient execution of async operations with exponential backoff for transient
failures, built on tenacity's AsyncRetrying:

- Each attempt is bounded by an optional per-attempt timeout
- Retries on RetryableFeedError (network errors, timeouts, 5xx, 429)
- Never retries NonRetryableFeedError or cancellation
- Honours Retry-After hints up to the configured ceiling
- Jitter to prevent thundering herd
- Sleeping between attempts is interruptible by a CancelToken

Usage:
    options = RetryOptions(max_attempts=3, base_delay=5.0, timeout=30.0)
    payload = await execute_with_retry(lambda: client.get(url), options, token)
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar, Union

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from .cancellation import CancelToken, OperationCancelledError, cancellable_sleep, run_cancellable
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 5.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_JITTER = 1.0  # seconds

# HTTP status codes that should trigger retry (any 5xx is retried as well)
RETRYABLE_STATUS_CODES = {
    429,  # Too Many Requests (rate limited)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}

# Status codes that should NOT be retried (client errors)
NON_RETRYABLE_STATUS_CODES = {
    400,  # Bad Request
    401,  # Unauthorized
    403,  # Forbidden
    404,  # Not Found
    422,  # Unprocessable Entity
}


# =============================================================================
# Exceptions
# =============================================================================


class RetryableFeedError(Exception):
    """
    Exception for retryable upstream errors.

    Raised for failures that may succeed on a later attempt. It preserves the
    original error information for logging and debugging.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.message: str = message
        self.status_code: Optional[int] = status_code
        self.retry_after: Optional[float] = retry_after  # Retry-After header value in seconds
        self.original_error: Optional[BaseException] = original_error
        super().__init__(self.message)


class OperationTimeoutError(RetryableFeedError):
    """A single attempt exceeded its time budget."""

    def __init__(self, timeout: float, description: str = "operation") -> None:
        super().__init__(f"{description} timed out after {timeout:g}s")
        self.timeout = timeout


class NonRetryableFeedError(Exception):
    """
    Exception for non-retryable upstream errors.

    Raised for errors that will not go away on retry (e.g. 404 Not Found,
    403 Forbidden, a payload that does not match the expected schema).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.message: str = message
        self.status_code: Optional[int] = status_code
        self.original_error: Optional[BaseException] = original_error
        super().__init__(self.message)


class PayloadValidationError(NonRetryableFeedError):
    """An upstream payload could not be validated into its typed model."""

    def __init__(
        self,
        message: str,
        errors: Optional[list[dict[str, Any]]] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original_error=original_error)
        self.errors: list[dict[str, Any]] = errors or []


# =============================================================================
# Classification
# =============================================================================


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def should_retry_exception(exc: BaseException) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exc: The exception to check

    Returns:
        True if the operation should be retried
    """
    if isinstance(exc, OperationCancelledError):
        return False

    if isinstance(exc, RetryableFeedError):
        return True

    if isinstance(exc, NonRetryableFeedError):
        return False

    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    if isinstance(exc, httpx.RequestError):
        return True  # Network errors are retryable

    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


def _parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """
    Parse Retry-After header from an HTTP response.

    Only the delta-seconds form is understood; HTTP-date values are ignored.
    """
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_httpx_error(
    error: httpx.HTTPStatusError,
) -> Union[RetryableFeedError, NonRetryableFeedError]:
    """
    Classify an httpx HTTP status error as retryable or non-retryable.

    Args:
        error: The httpx HTTPStatusError to classify

    Returns:
        RetryableFeedError for transient errors (429, 5xx)
        NonRetryableFeedError for permanent errors (404, 403, etc.)
    """
    status_code = error.response.status_code

    try:
        error_json = error.response.json()
        message = error_json.get("error", str(error)) if isinstance(error_json, dict) else str(error)
    except (json.JSONDecodeError, ValueError):
        message = error.response.text or str(error)

    if is_retryable_status(status_code):
        return RetryableFeedError(
            message=message,
            status_code=status_code,
            retry_after=_parse_retry_after(error.response.headers),
            original_error=error,
        )
    return NonRetryableFeedError(message=message, status_code=status_code, original_error=error)


# =============================================================================
# Options and Backoff
# =============================================================================


@dataclass
class RetryOptions:
    """
    Retry policy for one class of operation.

    Attributes:
        max_attempts: Total attempts, including the first
        base_delay: Delay before the first retry (seconds)
        max_delay: Ceiling for the backoff delay, before jitter
        backoff_factor: Exponential growth factor per attempt
        use_exponential_backoff: False for a constant base_delay between attempts
        jitter: Maximum uniformly-random seconds added to each delay
        should_retry: Predicate deciding whether a failure is worth retrying
        timeout: Per-attempt time budget (None for unbounded)
        description: Label used in log lines
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    use_exponential_backoff: bool = True
    jitter: float = DEFAULT_JITTER
    should_retry: Callable[[BaseException], bool] = field(default=should_retry_exception)
    timeout: Optional[float] = None
    description: str = "operation"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.description:
            self.description = "operation"


def calculate_delay(
    attempt: int,
    options: RetryOptions,
    retry_after: Optional[float] = None,
    rng: random.Random | None = None,
) -> float:
    """
    Calculate the wait before the next attempt.

    Args:
        attempt: The attempt that just failed (1-indexed)
        options: Retry policy
        retry_after: Server-provided Retry-After hint in seconds
        rng: Random source for jitter (module random by default)

    Returns:
        Seconds to wait: min(base * factor**(attempt-1), max_delay) plus jitter,
        raised towards retry_after (still capped at max_delay) when given
    """
    if options.use_exponential_backoff:
        delay = options.base_delay * options.backoff_factor ** (attempt - 1)
    else:
        delay = options.base_delay
    delay = min(delay, options.max_delay)

    if retry_after is not None:
        delay = max(delay, min(retry_after, options.max_delay))

    if options.jitter > 0:
        delay += (rng or random).uniform(0, options.jitter)
    return delay


class wait_backoff(wait_base):
    """tenacity wait strategy delegating to calculate_delay()."""

    def __init__(self, options: RetryOptions, rng: random.Random | None = None) -> None:
        self.options = options
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        retry_after = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            retry_after = getattr(retry_state.outcome.exception(), "retry_after", None)
        return calculate_delay(retry_state.attempt_number, self.options, retry_after, self.rng)


class stop_when_cancelled(stop_base):
    """tenacity stop condition that fires once the token is cancelled."""

    def __init__(self, token: CancelToken | None) -> None:
        self.token = token

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.token is not None and self.token.cancelled


# =============================================================================
# Executor
# =============================================================================


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    token: CancelToken | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    rng: random.Random | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        options: Retry policy (defaults to RetryOptions())
        token: Optional cancellation token checked at every suspension point
        sleep: Replacement for asyncio.sleep (tests inject a recorder)
        rng: Random source for jitter

    Returns:
        The operation's result

    Raises:
        OperationCancelledError: If the token fires during an attempt or a backoff
        Exception: The last failure, once retries are exhausted or the failure
            is not retryable
    """
    options = options or RetryOptions()

    async def _sleep(seconds: float) -> None:
        if sleep is None:
            await cancellable_sleep(seconds, token)
            return
        await sleep(seconds)
        if token is not None:
            token.raise_if_cancelled()

    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.1fs",
            options.description,
            retry_state.attempt_number,
            options.max_attempts,
            exc,
            delay,
            extra={
                "event": "retry",
                "attempt": retry_state.attempt_number,
                "max_attempts": options.max_attempts,
            },
        )

    async def _attempt() -> T:
        awaitable = operation()
        if options.timeout is not None:
            awaitable = asyncio.wait_for(awaitable, timeout=options.timeout)
        try:
            return await run_cancellable(awaitable, token)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(options.timeout or 0.0, options.description) from e

    def _retry_predicate(exc: BaseException) -> bool:
        if isinstance(exc, OperationCancelledError):
            return False
        return options.should_retry(exc)

    if token is not None:
        token.raise_if_cancelled()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(options.max_attempts) | stop_when_cancelled(token),
        wait=wait_backoff(options, rng),
        retry=retry_if_exception(_retry_predicate),
        sleep=_sleep,
        before_sleep=_log_retry,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            return await _attempt()

    raise AssertionError("unreachable: tenacity either returns or re-raises")
