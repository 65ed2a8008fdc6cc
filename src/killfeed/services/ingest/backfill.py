"""
Resumable Backfill from zKillboard Character Feeds.

Walks a tracked character's kill or loss feed page by page, newest first,
ingesting every record until it reaches:

- the stream cursor (everything older was covered by an earlier run)
- the retention cutoff (now - max_age_days)
- a page, record or empty-page limit
- a page it cannot fetch

The cursor is advanced after every page, so an interrupted run resumes where
it stopped instead of starting over.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from ...core.cancellation import CancelToken, OperationCancelledError, check_cancelled
from ...core.logging import get_logger
from ..killmail_store import KillmailStore
from .checkpoint import CheckpointStore, stream_name
from .clients import FEED_KINDS, FeedKind, ZKillboardClient
from .pipeline import KillmailIngestor

if TYPE_CHECKING:
    from ...core.config import KillfeedSettings

logger = get_logger(__name__)

# Stop reasons
STOP_UNTRACKED = "untracked"
STOP_COOLDOWN = "cooldown"
STOP_CURSOR = "cursor"
STOP_CUTOFF = "cutoff"
STOP_MAX_RECORDS = "max_records"
STOP_MAX_PAGES = "max_pages"
STOP_EMPTY_PAGES = "empty_pages"
STOP_FETCH_ERROR = "fetch_error"
STOP_CANCELLED = "cancelled"


@dataclass
class BackfillLimits:
    """Bounds on one backfill run."""

    max_pages: int = 20
    max_records: int = 500
    max_consecutive_empty: int = 5
    cooldown: timedelta = timedelta(hours=1)
    max_age_days: int = 30

    @classmethod
    def from_settings(cls, settings: KillfeedSettings) -> BackfillLimits:
        return cls(
            max_pages=settings.backfill_max_pages,
            max_records=settings.backfill_max_records,
            max_consecutive_empty=settings.backfill_max_consecutive_empty,
            cooldown=timedelta(minutes=settings.backfill_cooldown_minutes),
            max_age_days=settings.max_age_days,
        )


@dataclass
class BackfillSummary:
    """What one backfill run did and why it stopped."""

    entity_id: int
    kind: str
    stream: str
    pages_processed: int = 0
    ingested: int = 0
    skipped: int = 0
    existing: int = 0
    failed: int = 0
    too_old: int = 0
    invalid: int = 0
    oldest_record_time: Optional[datetime] = None
    newest_record_time: Optional[datetime] = None
    cursor_before: Optional[int] = None
    cursor_after: Optional[int] = None
    stop_reason: Optional[str] = None
    cancelled: bool = False
    error: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    def observe_time(self, kill_time: datetime) -> None:
        if self.oldest_record_time is None or kill_time < self.oldest_record_time:
            self.oldest_record_time = kill_time
        if self.newest_record_time is None or kill_time > self.newest_record_time:
            self.newest_record_time = kill_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "stream": self.stream,
            "pages_processed": self.pages_processed,
            "ingested": self.ingested,
            "skipped": self.skipped,
            "existing": self.existing,
            "failed": self.failed,
            "too_old": self.too_old,
            "invalid": self.invalid,
            "oldest_record_time": (
                self.oldest_record_time.isoformat() if self.oldest_record_time else None
            ),
            "newest_record_time": (
                self.newest_record_time.isoformat() if self.newest_record_time else None
            ),
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "stop_reason": self.stop_reason,
            "cancelled": self.cancelled,
            "error": self.error,
            "errors": list(self.errors),
        }


class BackfillDriver:
    """
    Runs backfills for tracked entities.

    Args:
        store: Killmail store (tracked entities, last-backfill stamps)
        checkpoints: Cursor store
        zkill: zKillboard client (feed pages)
        ingestor: Single-killmail ingestor
        limits: Run bounds
        now: UTC clock (injectable for tests)
    """

    def __init__(
        self,
        store: KillmailStore,
        checkpoints: CheckpointStore,
        zkill: ZKillboardClient,
        ingestor: KillmailIngestor,
        limits: BackfillLimits | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.zkill = zkill
        self.ingestor = ingestor
        self.limits = limits or BackfillLimits()
        self._now = now

    async def backfill(
        self,
        entity_id: int,
        max_age_days: int | None = None,
        kind: FeedKind = "kills",
        token: CancelToken | None = None,
        *,
        respect_cooldown: bool = True,
        mark_complete: bool = True,
    ) -> BackfillSummary:
        """
        Backfill one stream of one tracked entity.

        Args:
            entity_id: Tracked character id
            max_age_days: Retention boundary (defaults to limits.max_age_days)
            kind: "kills" or "losses"
            token: Optional cancellation token
            respect_cooldown: Skip the run if the entity was backfilled recently
            mark_complete: Stamp the entity's last-backfill time when the run ends

        Returns:
            BackfillSummary; never raises for fetch or ingest failures
        """
        if kind not in FEED_KINDS:
            raise ValueError(f"Unknown feed kind: {kind}")

        stream = stream_name(kind, entity_id)
        summary = BackfillSummary(entity_id=entity_id, kind=kind, stream=stream)

        entity = await self.store.get_tracked_entity(entity_id)
        if entity is None:
            logger.warning("Entity %d is not tracked, skipping %s backfill", entity_id, kind)
            summary.stop_reason = STOP_UNTRACKED
            return summary

        if respect_cooldown and self._in_cooldown(entity.last_backfill_at):
            logger.info(
                "Backfill for %d skipped; last ran at %s",
                entity_id,
                entity.last_backfill_at.isoformat() if entity.last_backfill_at else "never",
            )
            summary.stop_reason = STOP_COOLDOWN
            return summary

        days = self.limits.max_age_days if max_age_days is None else max_age_days
        cutoff = self._now() - timedelta(days=days)

        cursor = await self.checkpoints.get_cursor(stream)
        cursor_id = cursor.last_seen_id if cursor is not None else 0
        summary.cursor_before = cursor.last_seen_id if cursor is not None else None
        summary.cursor_after = summary.cursor_before

        logger.info(
            "Backfilling %s for %d since %s (cursor %s)",
            kind,
            entity_id,
            cutoff.isoformat(),
            summary.cursor_before,
        )

        high_water = cursor_id
        persisted = cursor_id

        async def persist() -> None:
            nonlocal persisted
            if high_water <= persisted:
                return
            try:
                await self.checkpoints.advance_cursor(stream, high_water)
                persisted = high_water
                summary.cursor_after = high_water
            except Exception as e:
                logger.error("Failed to advance cursor %s to %d: %s", stream, high_water, e)
                summary.errors.append(f"checkpoint: {e}")

        page = 1
        consecutive_empty = 0
        try:
            while summary.stop_reason is None:
                if page > self.limits.max_pages:
                    summary.stop_reason = STOP_MAX_PAGES
                    break
                check_cancelled(token)

                try:
                    records = await self.zkill.get_character_page(entity_id, page, kind, token)
                except OperationCancelledError:
                    raise
                except Exception as e:
                    logger.error("Error fetching %s for %d at page %d: %s", kind, entity_id, page, e)
                    summary.stop_reason = STOP_FETCH_ERROR
                    summary.error = str(e)
                    break

                if not records:
                    consecutive_empty += 1
                    logger.info(
                        "Empty page %d (consecutive: %d/%d)",
                        page,
                        consecutive_empty,
                        self.limits.max_consecutive_empty,
                    )
                    if consecutive_empty >= self.limits.max_consecutive_empty:
                        summary.stop_reason = STOP_EMPTY_PAGES
                    page += 1
                    continue

                consecutive_empty = 0
                summary.pages_processed += 1

                try:
                    for record in records:
                        kill_time = record.killmail_time
                        if kill_time is None:
                            logger.warning(
                                "Invalid timestamp for %s %d, skipping", kind, record.killmail_id
                            )
                            summary.invalid += 1
                            summary.skipped += 1
                            continue

                        if record.killmail_id <= cursor_id:
                            summary.stop_reason = STOP_CURSOR
                            break

                        if kill_time < cutoff:
                            summary.too_old += 1
                            summary.stop_reason = STOP_CUTOFF
                            break

                        summary.observe_time(kill_time)

                        result = await self.ingestor.ingest(record.killmail_id, token)
                        if result.success:
                            summary.ingested += 1
                            high_water = max(high_water, record.killmail_id)
                        else:
                            summary.skipped += 1
                            if result.existing:
                                summary.existing += 1
                            elif result.error:
                                summary.failed += 1

                        if summary.ingested > self.limits.max_records:
                            summary.stop_reason = STOP_MAX_RECORDS
                            break
                finally:
                    await persist()

                logger.info(
                    "Page %d complete - ingested %d, skipped %d so far",
                    page,
                    summary.ingested,
                    summary.skipped,
                )
                page += 1
        except OperationCancelledError:
            await persist()
            summary.cancelled = True
            summary.stop_reason = STOP_CANCELLED
            logger.warning(
                "Backfill of %s cancelled after %d page(s), %d ingested",
                stream,
                summary.pages_processed,
                summary.ingested,
            )
            return summary

        if mark_complete:
            await self.store.mark_backfill_complete(entity_id, self._now())

        logger.info(
            "Backfill of %s complete: %d page(s), %d ingested, %d skipped, %d too old (%s)",
            stream,
            summary.pages_processed,
            summary.ingested,
            summary.skipped,
            summary.too_old,
            summary.stop_reason,
            extra={"event": "backfill_complete", **summary.to_dict()},
        )
        return summary

    async def backfill_entity(
        self,
        entity_id: int,
        max_age_days: int | None = None,
        kinds: Iterable[FeedKind] = FEED_KINDS,
        token: CancelToken | None = None,
        *,
        respect_cooldown: bool = True,
    ) -> list[BackfillSummary]:
        """
        Backfill several streams of one entity under a single cooldown.

        The cooldown is checked once before the first stream and the entity is
        stamped once, after every stream ran without cancellation.
        """
        kinds = list(kinds)
        summaries: list[BackfillSummary] = []
        for index, kind in enumerate(kinds):
            summary = await self.backfill(
                entity_id,
                max_age_days,
                kind,
                token,
                respect_cooldown=respect_cooldown and index == 0,
                mark_complete=False,
            )
            summaries.append(summary)
            if summary.stop_reason in (STOP_UNTRACKED, STOP_COOLDOWN) or summary.cancelled:
                return summaries

        await self.store.mark_backfill_complete(entity_id, self._now())
        return summaries

    async def backfill_many(
        self,
        entity_ids: Iterable[int],
        max_age_days: int | None = None,
        kinds: Iterable[FeedKind] = FEED_KINDS,
        token: CancelToken | None = None,
        concurrency: int = 4,
        *,
        respect_cooldown: bool = True,
    ) -> list[BackfillSummary]:
        """
        Backfill several entities concurrently.

        All runs share this driver's clients, so they share the per-service
        rate limiters and circuit breakers. At most ``concurrency`` entities
        run at once.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))
        kinds = list(kinds)

        async def run(entity_id: int) -> list[BackfillSummary]:
            async with semaphore:
                return await self.backfill_entity(
                    entity_id, max_age_days, kinds, token, respect_cooldown=respect_cooldown
                )

        results = await asyncio.gather(*(run(entity_id) for entity_id in entity_ids))
        return [summary for summaries in results for summary in summaries]

    async def backfill_all(
        self,
        max_age_days: int | None = None,
        token: CancelToken | None = None,
        concurrency: int = 4,
        *,
        respect_cooldown: bool = True,
    ) -> list[BackfillSummary]:
        """Backfill kills then losses for every tracked entity."""
        entity_ids = sorted(await self.store.get_tracked_entity_ids())
        logger.info("Backfilling %d tracked entities", len(entity_ids))
        return await self.backfill_many(
            entity_ids,
            max_age_days,
            FEED_KINDS,
            token,
            concurrency,
            respect_cooldown=respect_cooldown,
        )

    def _in_cooldown(self, last_backfill_at: datetime | None) -> bool:
        if last_backfill_at is None or self.limits.cooldown <= timedelta(0):
            return False
        return self._now() - last_backfill_at < self.limits.cooldown
