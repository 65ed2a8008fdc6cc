"""Tests for the resumable backfill driver."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from killfeed.core.cancellation import CancelToken
from killfeed.services.ingest.backfill import (
    STOP_CANCELLED,
    STOP_COOLDOWN,
    STOP_CURSOR,
    STOP_CUTOFF,
    STOP_EMPTY_PAGES,
    STOP_FETCH_ERROR,
    STOP_MAX_PAGES,
    STOP_MAX_RECORDS,
    STOP_UNTRACKED,
    BackfillDriver,
    BackfillLimits,
    BackfillSummary,
)

TRACKED_PILOT = 90000001
OTHER_TRACKED_PILOT = 90000002
UNTRACKED_PILOT = 95000001
UNTRACKED_ATTACKER = 91000002


def _driver(runtime, **limits) -> BackfillDriver:
    limits.setdefault("max_consecutive_empty", 1)
    return BackfillDriver(
        runtime.store,
        runtime.checkpoints,
        runtime.zkill,
        runtime.ingestor,
        BackfillLimits(**limits),
    )


def _kills(upstream, *kill_ids: int, attacker: int = TRACKED_PILOT, **kwargs) -> list[dict]:
    return [upstream.add_kill(kill_id, attacker_ids=(attacker,), **kwargs) for kill_id in kill_ids]


class CancelAfter:
    """Ingestor wrapper that cancels ``token`` after ``count`` ingests."""

    def __init__(self, inner, token: CancelToken, count: int):
        self.inner = inner
        self.token = token
        self.count = count
        self.calls = 0

    async def ingest(self, kill_id, token=None, **kwargs):
        result = await self.inner.ingest(kill_id, token, **kwargs)
        self.calls += 1
        if self.calls >= self.count:
            self.token.cancel("operator interrupt")
        return result


@pytest.mark.asyncio
class TestBackfill:
    async def test_stops_at_cursor(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        await runtime.checkpoints.advance_cursor("kills:90000001", 500)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 600, 550, 480))

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_CURSOR
        assert summary.ingested == 2
        assert summary.pages_processed == 1
        assert summary.cursor_before == 500
        assert summary.cursor_after == 600
        assert (await runtime.checkpoints.get_cursor("kills:90000001")).last_seen_id == 600
        assert upstream.count("/killID/480/") == 0
        assert upstream.count("/killmails/480/") == 0
        assert await runtime.store.kill_exists(480) is False

    async def test_cold_start_walks_until_empty_pages(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1003, 1002))
        upstream.set_page("kills", TRACKED_PILOT, 2, _kills(upstream, 1001))

        summary = await _driver(runtime, max_consecutive_empty=2).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_EMPTY_PAGES
        assert summary.ingested == 3
        assert summary.pages_processed == 2
        assert summary.cursor_before is None
        assert summary.cursor_after == 1003
        assert upstream.count("/characterID/90000001/page/") == 4
        assert summary.oldest_record_time is not None
        assert summary.newest_record_time is not None

    async def test_stops_at_retention_cutoff(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        recent = _kills(upstream, 1003)
        old = _kills(upstream, 1002, 1001, age=timedelta(days=40))
        upstream.set_page("kills", TRACKED_PILOT, 1, recent + old)

        summary = await _driver(runtime).backfill(TRACKED_PILOT, max_age_days=30)

        assert summary.stop_reason == STOP_CUTOFF
        assert summary.ingested == 1
        assert summary.too_old == 1
        assert upstream.count("/killID/1002/") == 0
        assert upstream.count("/killID/1001/") == 0

    async def test_max_age_defaults_to_limits(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page(
            "kills", TRACKED_PILOT, 1, _kills(upstream, 1001, age=timedelta(days=3))
        )

        summary = await _driver(runtime, max_age_days=2).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_CUTOFF
        assert summary.ingested == 0

    async def test_cursor_checked_before_cutoff(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        await runtime.checkpoints.advance_cursor("kills:90000001", 1002)
        old = _kills(upstream, 1001, age=timedelta(days=40))
        upstream.set_page("kills", TRACKED_PILOT, 1, old)

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_CURSOR
        assert summary.too_old == 0

    async def test_time_range_excludes_stopping_record(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        await runtime.checkpoints.advance_cursor("kills:90000001", 500)
        page = (
            _kills(upstream, 600, age=timedelta(hours=1))
            + _kills(upstream, 550, age=timedelta(hours=2))
            + _kills(upstream, 480, age=timedelta(hours=3))
        )
        upstream.set_page("kills", TRACKED_PILOT, 1, page)

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_CURSOR
        assert summary.newest_record_time == upstream.now - timedelta(hours=1)
        assert summary.oldest_record_time == upstream.now - timedelta(hours=2)

    async def test_time_range_excludes_too_old_record(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        recent = _kills(upstream, 1002, age=timedelta(hours=1))
        old = _kills(upstream, 1001, age=timedelta(days=40))
        upstream.set_page("kills", TRACKED_PILOT, 1, recent + old)

        summary = await _driver(runtime).backfill(TRACKED_PILOT, max_age_days=30)

        assert summary.stop_reason == STOP_CUTOFF
        assert summary.oldest_record_time == upstream.now - timedelta(hours=1)
        assert summary.newest_record_time == summary.oldest_record_time

    async def test_checkpoint_failure_does_not_stop_run(self, runtime, upstream, monkeypatch):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1004, 1003))
        upstream.set_page("kills", TRACKED_PILOT, 2, _kills(upstream, 1002, 1001))

        advance = runtime.checkpoints.advance_cursor
        calls: list[int] = []

        async def flaky_advance(stream, last_seen_id):
            calls.append(last_seen_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("disk I/O error")
            return await advance(stream, last_seen_id)

        monkeypatch.setattr(
            runtime.checkpoints, "advance_cursor", AsyncMock(side_effect=flaky_advance)
        )

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_EMPTY_PAGES
        assert summary.pages_processed == 2
        assert summary.ingested == 4
        assert summary.errors == ["checkpoint: disk I/O error"]
        assert calls == [1004, 1004]
        assert summary.cursor_after == 1004
        assert (await runtime.checkpoints.get_cursor("kills:90000001")).last_seen_id == 1004

    async def test_max_pages(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        for page, kill_id in enumerate((1003, 1002, 1001), start=1):
            upstream.set_page("kills", TRACKED_PILOT, page, _kills(upstream, kill_id))

        summary = await _driver(runtime, max_pages=2).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_MAX_PAGES
        assert summary.pages_processed == 2
        assert summary.ingested == 2
        assert upstream.count("/page/3/") == 0

    async def test_max_records(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1005, 1004, 1003, 1002))

        summary = await _driver(runtime, max_records=2).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_MAX_RECORDS
        assert summary.ingested == 3
        assert summary.cursor_after == 1005
        assert await runtime.store.kill_exists(1002) is False

    async def test_fetch_error_keeps_progress(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1003, 1002))
        upstream.fail("/api/kills/characterID/90000001/page/2/", 503, 503, 503)

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_FETCH_ERROR
        assert summary.error == "upstream unavailable"
        assert summary.ingested == 2
        assert summary.cursor_after == 1003
        assert await runtime.store.get_last_backfill(TRACKED_PILOT) is not None

    async def test_rerun_is_idempotent(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1003, 1002))
        driver = _driver(runtime)
        await driver.backfill(TRACKED_PILOT)
        esi_requests = upstream.count("/killmails/")

        summary = await driver.backfill(TRACKED_PILOT, respect_cooldown=False)

        assert summary.stop_reason == STOP_CURSOR
        assert summary.ingested == 0
        assert upstream.count("/killmails/") == esi_requests
        assert (await runtime.store.get_stats()).total_killmails == 2

    async def test_untracked_entity(self, runtime, upstream):
        summary = await _driver(runtime).backfill(UNTRACKED_PILOT)

        assert summary.stop_reason == STOP_UNTRACKED
        assert upstream.requests == []

    async def test_cooldown(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        await runtime.store.mark_backfill_complete(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1001))
        driver = _driver(runtime, cooldown=timedelta(hours=1))

        skipped = await driver.backfill(TRACKED_PILOT)
        forced = await driver.backfill(TRACKED_PILOT, respect_cooldown=False)

        assert skipped.stop_reason == STOP_COOLDOWN
        assert skipped.ingested == 0
        assert forced.ingested == 1

    async def test_zero_cooldown_never_skips(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        await runtime.store.mark_backfill_complete(TRACKED_PILOT)

        summary = await _driver(runtime, cooldown=timedelta(0)).backfill(TRACKED_PILOT)

        assert summary.stop_reason == STOP_EMPTY_PAGES

    async def test_invalid_timestamp_is_counted(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        entries = _kills(upstream, 1003, 1002, 1001)
        entries[1]["killmail_time"] = "not a timestamp"
        upstream.set_page("kills", TRACKED_PILOT, 1, entries)

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.invalid == 1
        assert summary.skipped == 1
        assert summary.ingested == 2
        assert await runtime.store.kill_exists(1002) is False

    async def test_skipped_kills_do_not_raise_cursor(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        entries = _kills(upstream, 1003, attacker=UNTRACKED_ATTACKER) + _kills(upstream, 1002)
        upstream.set_page("kills", TRACKED_PILOT, 1, entries)

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.ingested == 1
        assert summary.skipped == 1
        assert summary.failed == 0
        assert summary.cursor_after == 1002

    async def test_failed_ingests_are_counted(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1002, 1001))
        upstream.raw["/latest/killmails/1002/hash1002/"] = (403, {"error": "Forbidden"})

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.failed == 1
        assert summary.ingested == 1
        assert summary.cursor_after == 1001

    async def test_existing_kills_are_counted(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1002, 1001))
        await runtime.ingestor.ingest(1001)

        summary = await _driver(runtime).backfill(TRACKED_PILOT)

        assert summary.existing == 1
        assert summary.ingested == 1

    async def test_losses_stream(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        loss = upstream.add_kill(2001, victim_id=TRACKED_PILOT, attacker_ids=(UNTRACKED_ATTACKER,))
        upstream.set_page("losses", TRACKED_PILOT, 1, [loss])

        summary = await _driver(runtime).backfill(TRACKED_PILOT, kind="losses")

        assert summary.stream == "losses:90000001"
        assert summary.ingested == 1
        assert await runtime.store.get_loss(2001) is not None
        assert (await runtime.checkpoints.get_cursor("losses:90000001")).last_seen_id == 2001
        assert await runtime.checkpoints.get_cursor("kills:90000001") is None

    async def test_cancellation_persists_cursor_without_stamp(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1003, 1002, 1001))
        token = CancelToken()
        driver = _driver(runtime)
        driver.ingestor = CancelAfter(runtime.ingestor, token, count=1)

        summary = await driver.backfill(TRACKED_PILOT, token=token)

        assert summary.cancelled is True
        assert summary.stop_reason == STOP_CANCELLED
        assert summary.ingested == 1
        assert (await runtime.checkpoints.get_cursor("kills:90000001")).last_seen_id == 1003
        assert await runtime.store.get_last_backfill(TRACKED_PILOT) is None
        assert await runtime.store.kill_exists(1002) is False

    async def test_invalid_kind(self, runtime):
        with pytest.raises(ValueError):
            await _driver(runtime).backfill(TRACKED_PILOT, kind="assists")


@pytest.mark.asyncio
class TestBackfillEntity:
    async def test_both_streams_then_single_stamp(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1001))
        loss = upstream.add_kill(2001, victim_id=TRACKED_PILOT, attacker_ids=(UNTRACKED_ATTACKER,))
        upstream.set_page("losses", TRACKED_PILOT, 1, [loss])
        driver = _driver(runtime)

        summaries = await driver.backfill_entity(TRACKED_PILOT)

        assert [s.kind for s in summaries] == ["kills", "losses"]
        assert [s.ingested for s in summaries] == [1, 1]
        assert all(s.stop_reason != STOP_COOLDOWN for s in summaries)
        assert await runtime.store.get_last_backfill(TRACKED_PILOT) is not None

        again = await driver.backfill_entity(TRACKED_PILOT)
        assert [s.stop_reason for s in again] == [STOP_COOLDOWN]

    async def test_untracked_entity(self, runtime):
        summaries = await _driver(runtime).backfill_entity(UNTRACKED_PILOT)

        assert [s.stop_reason for s in summaries] == [STOP_UNTRACKED]

    async def test_cancelled_entity_is_not_stamped(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1002, 1001))
        token = CancelToken()
        driver = _driver(runtime)
        driver.ingestor = CancelAfter(runtime.ingestor, token, count=1)

        summaries = await driver.backfill_entity(TRACKED_PILOT, token=token)

        assert len(summaries) == 1
        assert summaries[0].cancelled is True
        assert await runtime.store.get_last_backfill(TRACKED_PILOT) is None


@pytest.mark.asyncio
class TestBackfillAll:
    async def test_every_tracked_entity(self, runtime, upstream):
        await runtime.store.add_tracked_entity(OTHER_TRACKED_PILOT)
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        upstream.set_page("kills", TRACKED_PILOT, 1, _kills(upstream, 1001))
        upstream.set_page(
            "kills", OTHER_TRACKED_PILOT, 1, _kills(upstream, 1002, attacker=OTHER_TRACKED_PILOT)
        )

        summaries = await _driver(runtime).backfill_all(concurrency=2)

        assert [(s.entity_id, s.kind) for s in summaries] == [
            (TRACKED_PILOT, "kills"),
            (TRACKED_PILOT, "losses"),
            (OTHER_TRACKED_PILOT, "kills"),
            (OTHER_TRACKED_PILOT, "losses"),
        ]
        assert sum(s.ingested for s in summaries) == 2
        for entity_id in (TRACKED_PILOT, OTHER_TRACKED_PILOT):
            assert await runtime.store.get_last_backfill(entity_id) is not None

    async def test_backfill_many_single_kind(self, runtime, upstream):
        await runtime.store.add_tracked_entity(TRACKED_PILOT)
        await runtime.store.add_tracked_entity(OTHER_TRACKED_PILOT)

        summaries = await _driver(runtime).backfill_many(
            [TRACKED_PILOT, OTHER_TRACKED_PILOT], kinds=["losses"], concurrency=1
        )

        assert [s.stream for s in summaries] == ["losses:90000001", "losses:90000002"]

    async def test_no_tracked_entities(self, runtime, upstream):
        assert await _driver(runtime).backfill_all() == []
        assert upstream.requests == []


class TestLimitsAndSummary:
    def test_limits_from_settings(self, settings):
        configured = settings.model_copy(
            update={
                "backfill_max_pages": 3,
                "backfill_max_records": 40,
                "backfill_max_consecutive_empty": 2,
                "backfill_cooldown_minutes": 15,
                "max_age_days": 7,
            }
        )

        limits = BackfillLimits.from_settings(configured)

        assert limits == BackfillLimits(
            max_pages=3,
            max_records=40,
            max_consecutive_empty=2,
            cooldown=timedelta(minutes=15),
            max_age_days=7,
        )

    def test_summary_to_dict(self):
        summary = BackfillSummary(entity_id=1, kind="kills", stream="kills:1", ingested=2)
        summary.errors.append("checkpoint: disk full")

        data = summary.to_dict()

        assert data["stream"] == "kills:1"
        assert data["ingested"] == 2
        assert data["oldest_record_time"] is None
        assert data["stop_reason"] is None
        assert data["errors"] == ["checkpoint: disk full"]
