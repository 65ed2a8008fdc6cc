#!/usr/bin/env python3
"""
Killfeed CLI Entry Point

Provides command-line interface for killmail ingestion and backfill.
Run with: python -m killfeed <command> [args]
"""

import argparse
import json
import sys
from typing import Optional

from .core import get_utc_timestamp


def output_json(data: dict, indent: int = 2) -> None:
    """Print JSON output to stdout."""
    print(json.dumps(data, indent=indent, default=str))


def output_error(message: str, exit_code: int = 1, **kwargs) -> None:
    """Print error JSON and exit."""
    error_data = {
        "error": kwargs.pop("error_type", "error"),
        "message": message,
        "query_timestamp": get_utc_timestamp(),
    }
    error_data.update(kwargs)
    output_json(error_data)
    sys.exit(exit_code)


# =============================================================================
# Built-in Commands
# =============================================================================


HELP_TEXT = """
Killfeed - resumable killmail ingestion

Tracking:
  track add <id> [--name N]   Track a character
  track remove <id>           Stop tracking a character
  track list                  List tracked characters

Ingestion:
  ingest <kill_id>            Fetch and store one killmail
                              --refresh (resync a stored killmail)
  backfill <id> | --all       Walk zKillboard feeds for tracked characters
                              --kind kills|losses, --max-age-days N,
                              --force (ignore cooldown), --concurrency N
  listen                      Ingest kills live from zKillboard RedisQ
                              --queue-id ID, --max-polls N

System:
  status                      Store statistics, cursors, service state
  help                        Show this help message

Environment:
  KILLFEED_DB_PATH, KILLFEED_LOG_LEVEL, KILLFEED_LOG_JSON, KILLFEED_NO_RETRY,
  KILLFEED_MAX_AGE_DAYS, KILLFEED_REDISQ_QUEUE_ID and the other
  KILLFEED_* settings
"""


def cmd_help(args: argparse.Namespace) -> dict:
    """Show help message."""
    print(HELP_TEXT)
    return {}


# =============================================================================
# Main Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="killfeed",
        description="Killfeed - resumable killmail ingestion from zKillboard and ESI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    help_parser = subparsers.add_parser("help", help="Show help message")
    help_parser.set_defaults(func=cmd_help)

    from .commands import backfill, ingest, listen, track

    track.register_parsers(subparsers)
    ingest.register_parsers(subparsers)
    backfill.register_parsers(subparsers)
    listen.register_parsers(subparsers)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Default to help if no command
    if not args.command:
        cmd_help(args)
        return 0

    # Groups like "track" need a subcommand
    if not hasattr(args, "func"):
        output_error(
            f"Missing subcommand for: {args.command}",
            error_type="unknown_command",
            hint="Run 'killfeed help' for usage",
        )

    try:
        result = args.func(args)

        # Output result if it's a dict (JSON response)
        if isinstance(result, dict) and result:
            output_json(result)

            # Return non-zero exit code if result contains error
            if result.get("error"):
                return 1

        return 0

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        output_error(str(e), error_type="command_error", command=args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
