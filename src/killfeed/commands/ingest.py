"""
Ingestion and Status CLI Commands.

- ingest: Fetch and store one killmail
- status: Store statistics, backfill cursors, limiter and breaker state
"""

from __future__ import annotations

import argparse

from ..core.formatters import format_datetime, format_isk, get_utc_timestamp
from ._runner import run_with_runtime


def cmd_ingest(args: argparse.Namespace) -> dict:
    """
    Ingest a single killmail.

    The kill is stored only if a tracked character appears on it.
    """

    async def operation(runtime, token) -> dict:
        result = await runtime.ingestor.ingest(args.kill_id, token, refresh=args.refresh)
        output = result.to_dict()
        if output["error"] is None:
            del output["error"]

        if result.success or result.existing:
            kill = await runtime.store.get_kill(args.kill_id)
            if kill is not None:
                output["kill"] = {
                    "kill_time": format_datetime(kill.kill_time),
                    "solar_system_id": kill.solar_system_id,
                    "total_value": kill.total_value,
                    "total_value_display": format_isk(kill.total_value),
                    "attacker_count": kill.attacker_count,
                    "is_npc": kill.is_npc,
                    "is_solo": kill.is_solo,
                    "labels": list(kill.labels),
                }

        output["query_timestamp"] = get_utc_timestamp()
        return output

    return run_with_runtime(operation)


def cmd_status(args: argparse.Namespace) -> dict:
    """Show store statistics and resilience state."""

    async def operation(runtime, token) -> dict:
        stats = await runtime.store.get_stats()
        cursors = await runtime.checkpoints.list_cursors()
        return {
            "database": {
                "path": str(runtime.settings.killmail_db_path),
                "size_bytes": stats.database_size_bytes,
            },
            "killmails": {
                "total": stats.total_killmails,
                "attackers": stats.total_attackers,
                "involvements": stats.total_involvements,
                "losses": stats.total_losses,
                "oldest": format_datetime(stats.oldest_killmail_time),
                "newest": format_datetime(stats.newest_killmail_time),
            },
            "tracked_entities": stats.tracked_entities,
            "cursors": [
                {
                    "stream": c.stream_name,
                    "last_seen_id": c.last_seen_id,
                    "updated_at": format_datetime(c.last_seen_time),
                }
                for c in cursors
            ],
            **runtime.resilience_stats(),
            "query_timestamp": get_utc_timestamp(),
        }

    return run_with_runtime(operation)


def register_parsers(subparsers) -> None:
    """Register ingestion command parsers."""

    # ingest
    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Fetch and store a single killmail",
    )
    ingest_parser.add_argument("kill_id", type=int, help="Killmail ID")
    ingest_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Re-fetch a stored killmail and resync its attackers and involvements",
    )
    ingest_parser.set_defaults(func=cmd_ingest)

    # status
    status_parser = subparsers.add_parser(
        "status",
        help="Show store statistics and service state",
    )
    status_parser.set_defaults(func=cmd_status)
