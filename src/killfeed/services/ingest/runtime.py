"""
Runtime wiring for the ingestion services.

IngestRuntime builds every long-lived collaborator exactly once: the rate
limiter and circuit breaker registries, the zKillboard, ESI and RedisQ HTTP
clients, the store, the checkpoint store, the ingestor, the backfill driver
and the live listener. Commands and tests use it as an async context manager
so connections are opened and closed in one place.

Usage:
    async with IngestRuntime.from_settings(get_settings()) as runtime:
        result = await runtime.ingestor.ingest(123456789)
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from ...core.async_client import ResilientAsyncClient
from ...core.circuit_breaker import CircuitBreakerRegistry
from ...core.config import KillfeedSettings
from ...core.logging import get_logger
from ...core.rate_limit import (
    ESI_SERVICE,
    REDISQ_SERVICE,
    ZKILLBOARD_SERVICE,
    RateLimiterRegistry,
)
from ..killmail_store import KillmailStore, SQLiteKillmailStore
from .backfill import BackfillDriver, BackfillLimits
from .checkpoint import CheckpointStore
from .clients import ESIKillmailClient, ZKillboardClient
from .listener import RedisQListener
from .pipeline import KillmailIngestor

logger = get_logger(__name__)


class IngestRuntime:
    """Container for the ingestion object graph."""

    def __init__(
        self,
        settings: KillfeedSettings,
        store: KillmailStore,
        limiters: RateLimiterRegistry,
        breakers: CircuitBreakerRegistry,
        zkill_http: ResilientAsyncClient,
        esi_http: ResilientAsyncClient,
        redisq_http: ResilientAsyncClient,
    ):
        self.settings = settings
        self.store = store
        self.limiters = limiters
        self.breakers = breakers
        self.zkill_http = zkill_http
        self.esi_http = esi_http
        self.redisq_http = redisq_http

        self.zkill = ZKillboardClient(zkill_http)
        self.esi = ESIKillmailClient(
            esi_http,
            cache_ttl=settings.detail_cache_ttl_seconds,
            cache_size=settings.detail_cache_size,
        )
        self.checkpoints = CheckpointStore(store)
        self.ingestor = KillmailIngestor(store, self.zkill, self.esi)
        self.driver = BackfillDriver(
            store,
            self.checkpoints,
            self.zkill,
            self.ingestor,
            BackfillLimits.from_settings(settings),
        )
        self.listener = RedisQListener(
            redisq_http,
            store,
            self.ingestor,
            queue_id=settings.redisq_queue_id,
            ttw=settings.redisq_ttw_seconds,
            error_backoff=settings.redisq_error_backoff_seconds,
            tracked_refresh=settings.tracked_refresh_seconds,
            activity_log_interval=settings.activity_log_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: KillfeedSettings,
        store: Optional[KillmailStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> IngestRuntime:
        """
        Build the runtime from settings.

        Args:
            settings: Loaded configuration
            store: Store to use (defaults to SQLite at settings.killmail_db_path)
            transport: httpx transport for every client (tests pass MockTransport)
        """
        limiters = RateLimiterRegistry(
            {
                ZKILLBOARD_SERVICE: settings.zkill_min_delay_seconds,
                ESI_SERVICE: settings.esi_min_delay_seconds,
                REDISQ_SERVICE: settings.redisq_min_delay_seconds,
            }
        )
        breakers = CircuitBreakerRegistry(
            failure_threshold=settings.breaker_failure_threshold,
            cooldown=settings.breaker_cooldown_seconds,
        )

        zkill_http = ResilientAsyncClient(
            ZKILLBOARD_SERVICE,
            settings.zkill_base_url,
            limiters.get(ZKILLBOARD_SERVICE),
            breakers.get(ZKILLBOARD_SERVICE),
            settings.retry_options(timeout=settings.feed_timeout_seconds),
            user_agent=settings.user_agent,
            transport=transport,
        )
        esi_http = ResilientAsyncClient(
            ESI_SERVICE,
            settings.esi_base_url,
            limiters.get(ESI_SERVICE),
            breakers.get(ESI_SERVICE),
            settings.retry_options(timeout=settings.detail_timeout_seconds),
            user_agent=settings.user_agent,
            transport=transport,
        )
        redisq_http = ResilientAsyncClient(
            REDISQ_SERVICE,
            settings.redisq_base_url,
            limiters.get(REDISQ_SERVICE),
            breakers.get(REDISQ_SERVICE),
            settings.retry_options(timeout=settings.redisq_timeout_seconds),
            user_agent=settings.user_agent,
            transport=transport,
            follow_redirects=True,
        )

        if store is None:
            store = SQLiteKillmailStore(settings.killmail_db_path)

        return cls(settings, store, limiters, breakers, zkill_http, esi_http, redisq_http)

    async def __aenter__(self) -> IngestRuntime:
        await self.store.initialize()
        await self.zkill_http.open()
        await self.esi_http.open()
        await self.redisq_http.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.zkill_http.close()
        await self.esi_http.close()
        await self.redisq_http.close()
        await self.store.close()

    def resilience_stats(self) -> dict[str, Any]:
        """Limiter, breaker and detail cache snapshots for status output."""
        return {
            "rate_limiters": self.limiters.get_stats(),
            "circuit_breakers": self.breakers.get_stats(),
            "detail_cache": self.esi.cache_stats(),
        }
