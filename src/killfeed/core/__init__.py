"""
Killfeed core infrastructure.

Shared building blocks for every service: configuration, logging,
cooperative cancellation, retry with backoff, rate limiting, circuit
breaking and the resilient HTTP client.
"""

from .async_client import ResilientAsyncClient
from .cancellation import CancelToken, OperationCancelledError
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)
from .config import KillfeedSettings, get_settings, reset_settings
from .formatters import format_datetime, format_isk, get_utc_now, get_utc_timestamp
from .logging import get_logger
from .rate_limit import RateLimiter, RateLimiterRegistry
from .retry import (
    NonRetryableFeedError,
    OperationTimeoutError,
    PayloadValidationError,
    RetryableFeedError,
    RetryOptions,
    calculate_delay,
    classify_httpx_error,
    execute_with_retry,
    should_retry_exception,
)

__all__ = [
    # Config
    "KillfeedSettings",
    "get_settings",
    "reset_settings",
    # Formatting
    "format_isk",
    "format_datetime",
    "get_utc_now",
    "get_utc_timestamp",
    # Logging
    "get_logger",
    # Cancellation
    "CancelToken",
    "OperationCancelledError",
    # Retry
    "RetryOptions",
    "execute_with_retry",
    "calculate_delay",
    "should_retry_exception",
    "classify_httpx_error",
    "RetryableFeedError",
    "NonRetryableFeedError",
    "OperationTimeoutError",
    "PayloadValidationError",
    # Rate limiting
    "RateLimiter",
    "RateLimiterRegistry",
    # Circuit breaking
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    # HTTP
    "ResilientAsyncClient",
]
