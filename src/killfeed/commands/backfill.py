"""
Backfill CLI Commands.

Walks zKillboard character feeds for tracked characters, ingesting every
killmail newer than the stream cursor and the retention cutoff. Runs in the
foreground; Ctrl+C stops it cleanly after persisting the cursor.
"""

from __future__ import annotations

import argparse

from ..core.config import get_settings
from ..core.formatters import get_utc_timestamp
from ..services.ingest import BackfillSummary
from ._runner import run_with_runtime


def _totals(summaries: list[BackfillSummary]) -> dict:
    return {
        "pages_processed": sum(s.pages_processed for s in summaries),
        "ingested": sum(s.ingested for s in summaries),
        "skipped": sum(s.skipped for s in summaries),
        "existing": sum(s.existing for s in summaries),
        "failed": sum(s.failed for s in summaries),
    }


def cmd_backfill(args: argparse.Namespace) -> dict:
    """
    Backfill one tracked character, or every tracked character with --all.

    Without --kind both the kills and the losses feed are walked.
    """
    if args.all and args.entity_id is not None:
        return {
            "error": "invalid_arguments",
            "message": "Pass either an entity ID or --all, not both",
            "query_timestamp": get_utc_timestamp(),
        }
    if not args.all and args.entity_id is None:
        return {
            "error": "invalid_arguments",
            "message": "An entity ID or --all is required",
            "query_timestamp": get_utc_timestamp(),
        }

    settings = get_settings()
    concurrency = args.concurrency or settings.backfill_concurrency
    respect_cooldown = not args.force

    async def operation(runtime, token) -> dict:
        driver = runtime.driver
        if args.all:
            if args.kind:
                entity_ids = sorted(await runtime.store.get_tracked_entity_ids())
                summaries = await driver.backfill_many(
                    entity_ids,
                    args.max_age_days,
                    [args.kind],
                    token,
                    concurrency,
                    respect_cooldown=respect_cooldown,
                )
            else:
                summaries = await driver.backfill_all(
                    args.max_age_days, token, concurrency, respect_cooldown=respect_cooldown
                )
        elif args.kind:
            summaries = [
                await driver.backfill(
                    args.entity_id,
                    args.max_age_days,
                    args.kind,
                    token,
                    respect_cooldown=respect_cooldown,
                )
            ]
        else:
            summaries = await driver.backfill_entity(
                args.entity_id, args.max_age_days, token=token, respect_cooldown=respect_cooldown
            )

        return {
            "summaries": [s.to_dict() for s in summaries],
            "totals": _totals(summaries),
            "cancelled": token.cancelled,
            "query_timestamp": get_utc_timestamp(),
        }

    return run_with_runtime(operation)


def register_parsers(subparsers) -> None:
    """Register backfill command parsers."""
    backfill_parser = subparsers.add_parser(
        "backfill",
        help="Backfill killmails from zKillboard character feeds",
    )
    backfill_parser.add_argument(
        "entity_id",
        type=int,
        nargs="?",
        help="Tracked character ID",
    )
    backfill_parser.add_argument(
        "--all",
        action="store_true",
        help="Backfill every tracked character",
    )
    backfill_parser.add_argument(
        "--kind",
        choices=["kills", "losses"],
        help="Only walk one feed (default: both)",
    )
    backfill_parser.add_argument(
        "--max-age-days",
        type=int,
        help="Retention boundary in days (default: KILLFEED_MAX_AGE_DAYS)",
    )
    backfill_parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the per-character backfill cooldown",
    )
    backfill_parser.add_argument(
        "--concurrency",
        type=int,
        help="Characters backfilled at once with --all (default: KILLFEED_BACKFILL_CONCURRENCY)",
    )
    backfill_parser.set_defaults(func=cmd_backfill)
