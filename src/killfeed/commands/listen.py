"""
Live Ingestion CLI Commands.

Consumes zKillboard's RedisQ in the foreground, storing every kill that
involves a tracked character. Runs until Ctrl+C, then prints the run's
counters.
"""

from __future__ import annotations

import argparse

from ..core.formatters import get_utc_timestamp
from ._runner import run_with_runtime


def cmd_listen(args: argparse.Namespace) -> dict:
    """Listen to RedisQ until interrupted (or for --max-polls polls)."""

    async def operation(runtime, token) -> dict:
        listener = runtime.listener
        if args.queue_id:
            listener.queue_id = args.queue_id

        stats = await listener.run(token, max_polls=args.max_polls)
        return {
            "queue_id": listener.queue_id,
            "stats": stats.to_dict(),
            "tracked_characters": len(listener.tracked_ids),
            "cancelled": token.cancelled,
            "query_timestamp": get_utc_timestamp(),
        }

    return run_with_runtime(operation)


def register_parsers(subparsers) -> None:
    """Register live ingestion command parsers."""
    listen_parser = subparsers.add_parser(
        "listen",
        help="Ingest kills live from zKillboard RedisQ",
    )
    listen_parser.add_argument(
        "--queue-id",
        help="RedisQ queue identifier (default: KILLFEED_REDISQ_QUEUE_ID)",
    )
    listen_parser.add_argument(
        "--max-polls",
        type=int,
        help="Stop after this many polls (default: run until interrupted)",
    )
    listen_parser.set_defaults(func=cmd_listen)
