"""
RedisQ Listener Service.

Long-polls zKillboard's RedisQ endpoint for kills as they happen and feeds
every kill involving a tracked character through the same KillmailIngestor
the backfill uses. RedisQ delivers each kill once per queue ID; a kill lost
to a crash between delivery and storage is recovered by the next backfill.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ...core.async_client import ResilientAsyncClient
from ...core.cancellation import CancelToken, OperationCancelledError, cancellable_sleep
from ...core.logging import get_logger
from ...core.retry import PayloadValidationError
from ..killmail_store import KillmailStore
from .models import RedisQPackage, validate_payload
from .pipeline import IngestResult, KillmailIngestor
from .sync import derive_involvements

logger = get_logger(__name__)

LISTEN_PATH = "/listen.php"


@dataclass
class ListenerStats:
    """Counters for one listener run."""

    polls: int = 0
    poll_errors: int = 0
    received: int = 0
    ingested: int = 0
    skipped: int = 0
    existing: int = 0
    failed: int = 0
    invalid: int = 0
    last_kill_id: Optional[int] = None
    last_kill_time: Optional[datetime] = None

    def record(self, result: IngestResult) -> None:
        if result.success:
            self.ingested += 1
            self.last_kill_id = result.kill_id
            self.last_kill_time = result.timestamp
            return
        self.skipped += 1
        if result.existing:
            self.existing += 1
        elif result.error:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "polls": self.polls,
            "poll_errors": self.poll_errors,
            "received": self.received,
            "ingested": self.ingested,
            "skipped": self.skipped,
            "existing": self.existing,
            "failed": self.failed,
            "invalid": self.invalid,
            "last_kill_id": self.last_kill_id,
            "last_kill_time": self.last_kill_time.isoformat() if self.last_kill_time else None,
        }


class RedisQListener:
    """
    Foreground RedisQ consumer.

    Args:
        http: Resilient client for the RedisQ service (its own limiter and breaker)
        store: Store the tracked character set is read from
        ingestor: Pipeline every relevant kill goes through
        queue_id: RedisQ queue identifier
        ttw: Seconds RedisQ may hold each poll open
        error_backoff: Pause after a poll that failed every retry
        tracked_refresh: Seconds between reloads of the tracked character set
        activity_log_interval: Seconds between activity log lines
        clock: Monotonic clock (injectable for tests)
        sleep: Cancellable sleep (injectable for tests)
    """

    def __init__(
        self,
        http: ResilientAsyncClient,
        store: KillmailStore,
        ingestor: KillmailIngestor,
        queue_id: str,
        ttw: int = 10,
        error_backoff: float = 5.0,
        tracked_refresh: float = 300.0,
        activity_log_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float, Optional[CancelToken]], Awaitable[None]] = cancellable_sleep,
    ):
        self.http = http
        self.store = store
        self.ingestor = ingestor
        self.queue_id = queue_id
        self.ttw = ttw
        self.error_backoff = error_backoff
        self.tracked_refresh = tracked_refresh
        self.activity_log_interval = activity_log_interval
        self._clock = clock
        self._sleep = sleep

        self.stats = ListenerStats()
        self.tracked_ids: set[int] = set()
        self._running = False
        self._last_refresh: Optional[float] = None
        self._last_activity_log = clock()
        self._period_received = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def refresh_tracked(self) -> set[int]:
        """Reload the tracked character set used to pre-filter packages."""
        self.tracked_ids = await self.store.get_tracked_entity_ids()
        self._last_refresh = self._clock()
        logger.info("Refreshed %d tracked characters", len(self.tracked_ids))
        return self.tracked_ids

    async def poll_once(self, token: CancelToken | None = None) -> Optional[RedisQPackage]:
        """
        Long-poll RedisQ once.

        Returns:
            The delivered package, or None when the wait ended without a kill

        Raises:
            CircuitOpenError, RetryableFeedError, NonRetryableFeedError,
            PayloadValidationError: The poll failed
            OperationCancelledError: The token fired
        """
        data = await self.http.get_json(
            LISTEN_PATH,
            token,
            params={"queueID": self.queue_id, "ttw": self.ttw},
        )
        self.stats.polls += 1
        if not isinstance(data, dict):
            raise PayloadValidationError(f"RedisQ returned {type(data).__name__}, expected object")

        package = data.get("package")
        if package is None:
            return None
        return validate_payload(RedisQPackage, package, "RedisQ package")

    async def process(
        self, package: RedisQPackage, token: CancelToken | None = None
    ) -> Optional[IngestResult]:
        """
        Ingest one delivered package.

        Packages carrying the ESI killmail are checked against the tracked set
        first, so kills nobody tracks cost no ESI request.

        Returns:
            The ingest result, or None if the package was dropped before ingestion
        """
        self.stats.received += 1
        self._period_received += 1

        kill_id = package.resolved_kill_id
        if kill_id is None or package.zkb is None:
            logger.debug("Invalid RedisQ package received")
            self.stats.invalid += 1
            self.stats.skipped += 1
            return None

        embedded = package.embedded_killmail()
        if embedded is not None:
            involvements = derive_involvements(
                embedded.victim.to_victim(),
                [a.to_attacker() for a in embedded.attackers],
                self.tracked_ids,
            )
            if not involvements:
                logger.debug("Skipped killmail %d - no tracked characters involved", kill_id)
                self.stats.skipped += 1
                return None

        result = await self.ingestor.ingest(kill_id, token, summary=package.to_record())
        self.stats.record(result)
        if result.success:
            logger.info("Saved killmail %d from RedisQ", kill_id)
        return result

    async def run(
        self, token: CancelToken | None = None, max_polls: Optional[int] = None
    ) -> ListenerStats:
        """
        Poll until cancelled, stopped, or ``max_polls`` polls were attempted.

        Failed polls are logged, counted and followed by ``error_backoff``;
        they never end the run.
        """
        if self._running:
            raise RuntimeError("RedisQ listener is already running")

        self._running = True
        logger.info("Starting RedisQ listener (queue_id=%s)", self.queue_id)
        attempts = 0
        try:
            await self.refresh_tracked()
            while self._running and (token is None or not token.cancelled):
                if max_polls is not None and attempts >= max_polls:
                    break
                attempts += 1

                try:
                    package = await self.poll_once(token)
                    if package is not None:
                        await self.process(package, token)
                except OperationCancelledError:
                    break
                except Exception as e:
                    self.stats.poll_errors += 1
                    logger.warning(
                        "RedisQ poll failed (errors=%d): %s; pausing %.1fs",
                        self.stats.poll_errors,
                        e,
                        self.error_backoff,
                    )
                    try:
                        await self._sleep(self.error_backoff, token)
                    except OperationCancelledError:
                        break

                await self._maybe_refresh_tracked()
                self._maybe_log_activity()
        finally:
            self._running = False
            logger.info(
                "RedisQ listener stopped (received=%d, ingested=%d, skipped=%d)",
                self.stats.received,
                self.stats.ingested,
                self.stats.skipped,
                extra={"event": "listener_stopped", **self.stats.to_dict()},
            )
        return self.stats

    def stop(self) -> None:
        """Ask a running listener to return after the current poll."""
        if not self._running:
            logger.warning("RedisQ listener is not running")
            return
        logger.info("Stopping RedisQ listener...")
        self._running = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "queue_id": self.queue_id,
            "tracked_characters": len(self.tracked_ids),
            **self.stats.to_dict(),
        }

    async def _maybe_refresh_tracked(self) -> None:
        last = self._last_refresh
        if last is not None and self._clock() - last < self.tracked_refresh:
            return
        try:
            await self.refresh_tracked()
        except Exception as e:
            # Keep filtering with the previous set; the next interval retries
            logger.error("Failed to refresh tracked characters: %s", e)
            self._last_refresh = self._clock()

    def _maybe_log_activity(self) -> None:
        now = self._clock()
        elapsed = now - self._last_activity_log
        if elapsed < self.activity_log_interval:
            return
        if self._period_received:
            logger.info(
                "RedisQ activity: %d killmails received in last %ds",
                self._period_received,
                round(elapsed),
            )
        else:
            logger.debug("RedisQ activity: no killmails received in the last %ds", round(elapsed))
        self._period_received = 0
        self._last_activity_log = now
