"""
Killfeed Resilient Async HTTP Client

Async JSON-over-HTTP client shared by the zKillboard and ESI clients.

Every call is layered as:

    CircuitBreaker.call
      -> execute_with_retry (backoff, cancellation)
        -> RateLimiter.wait
        -> httpx GET (per-attempt timeout)

so each network attempt (retries included) is spaced by the service's rate
limiter, and an open circuit rejects the call before any attempt is made.
The timeout starts once the limiter admits the request; time spent queued
behind other callers never counts against it.
Must be used as an async context manager to ensure proper connection pooling.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import Any, Optional, Union

import httpx

from .cancellation import CancelToken
from .circuit_breaker import CircuitBreaker
from .logging import get_logger
from .rate_limit import RateLimiter
from .retry import (
    NonRetryableFeedError,
    OperationTimeoutError,
    PayloadValidationError,
    RetryableFeedError,
    RetryOptions,
    classify_httpx_error,
    execute_with_retry,
)

logger = get_logger(__name__)

JSONValue = Union[dict, list, int, float, str, None]


class ResilientAsyncClient:
    """
    Rate-limited, retried, circuit-broken JSON client for one service.

    Usage:
        async with ResilientAsyncClient("esi", base_url, limiter, breaker, options) as client:
            data = await client.get_json("/killmails/123/abc/", token=token)
    """

    def __init__(
        self,
        service_name: str,
        base_url: str,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        retry_options: RetryOptions,
        user_agent: str = "killfeed",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        follow_redirects: bool = False,
    ) -> None:
        """
        Initialize the client.

        Args:
            service_name: Service label for logs
            base_url: Base URL every request path is joined to
            limiter: Rate limiter shared by every caller of this service
            breaker: Circuit breaker shared by every caller of this service
            retry_options: Retry policy, including the per-attempt timeout
            user_agent: User-Agent header value
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            follow_redirects: Follow 3xx responses (RedisQ redirects its listen endpoint)
        """
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter
        self.breaker = breaker
        self.retry_options = retry_options
        self.user_agent = user_agent
        self._transport = transport
        self.follow_redirects = follow_redirects
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> ResilientAsyncClient:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the pooled httpx client (idempotent)."""
        if self._client is not None:
            return
        timeout = self.retry_options.timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout) if timeout else httpx.Timeout(None),
            headers={"Accept": "application/json", "User-Agent": self.user_agent},
            transport=self._transport,
            follow_redirects=self.follow_redirects,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        token: CancelToken | None = None,
        params: Optional[dict[str, Any]] = None,
        description: str | None = None,
    ) -> JSONValue:
        """
        GET ``path`` and return the decoded JSON body.

        Args:
            path: Request path relative to base_url
            token: Optional cancellation token
            params: Optional query parameters
            description: Label for retry log lines (defaults to "<service> GET <path>")

        Returns:
            Parsed JSON response

        Raises:
            CircuitOpenError: The service's circuit is open
            RetryableFeedError: Transient failure that survived every retry
            NonRetryableFeedError: Permanent client error (404, 403, ...)
            PayloadValidationError: Body was not valid JSON
            OperationCancelledError: The token fired
        """
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        timeout = self.retry_options.timeout
        options = replace(
            self.retry_options,
            timeout=None,
            description=description or f"{self.service_name} GET {path}",
        )

        async def attempt() -> JSONValue:
            # Queueing behind other callers on the shared limiter is not part of the attempt
            await self.limiter.wait(token)
            if timeout is None:
                return await self._get_once(path, params)
            try:
                return await asyncio.wait_for(self._get_once(path, params), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(timeout, options.description) from e

        return await self.breaker.call(lambda: execute_with_retry(attempt, options, token))

    async def get_json_safe(
        self,
        path: str,
        token: CancelToken | None = None,
        params: Optional[dict[str, Any]] = None,
    ) -> JSONValue:
        """
        GET ``path``, returning None on 404.

        Useful for lookups where missing data is expected.
        """
        try:
            return await self.get_json(path, token, params)
        except NonRetryableFeedError as e:
            if e.status_code == 404:
                logger.debug("%s returned 404 for %s", self.service_name, path)
                return None
            raise

    async def _get_once(self, path: str, params: Optional[dict[str, Any]] = None) -> JSONValue:
        """Execute one GET request, translating failures into feed errors."""
        assert self._client is not None
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise classify_httpx_error(e) from e
        except httpx.RequestError as e:
            raise RetryableFeedError(f"Network error: {e}", original_error=e) from e

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise PayloadValidationError(
                f"{self.service_name} returned a non-JSON body for {path}", original_error=e
            ) from e
