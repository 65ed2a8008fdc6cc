"""
Tracked Entity CLI Commands.

Characters must be tracked before their feeds can be backfilled; ingestion
keeps only killmails that involve a tracked character.
"""

from __future__ import annotations

import argparse
from typing import Any

from ..core.formatters import format_datetime, get_utc_timestamp
from ..services.killmail_store import TrackedEntity
from ._runner import run_with_runtime


def _entity_to_dict(entity: TrackedEntity) -> dict[str, Any]:
    return {
        "entity_id": entity.entity_id,
        "name": entity.name,
        "added_at": format_datetime(entity.added_at),
        "last_backfill_at": format_datetime(entity.last_backfill_at),
    }


def cmd_track_add(args: argparse.Namespace) -> dict:
    """Start tracking a character."""

    async def operation(runtime, token) -> dict:
        entity = await runtime.store.add_tracked_entity(args.entity_id, args.name)
        return {
            "status": "tracked",
            "entity": _entity_to_dict(entity),
            "query_timestamp": get_utc_timestamp(),
        }

    return run_with_runtime(operation)


def cmd_track_remove(args: argparse.Namespace) -> dict:
    """Stop tracking a character. Stored killmails are kept."""

    async def operation(runtime, token) -> dict:
        removed = await runtime.store.remove_tracked_entity(args.entity_id)
        if not removed:
            return {
                "error": "not_tracked",
                "message": f"Entity {args.entity_id} is not tracked",
                "query_timestamp": get_utc_timestamp(),
            }
        return {
            "status": "removed",
            "entity_id": args.entity_id,
            "query_timestamp": get_utc_timestamp(),
        }

    return run_with_runtime(operation)


def cmd_track_list(args: argparse.Namespace) -> dict:
    """List tracked characters."""

    async def operation(runtime, token) -> dict:
        entities = await runtime.store.list_tracked_entities()
        return {
            "entities": [_entity_to_dict(e) for e in entities],
            "count": len(entities),
            "query_timestamp": get_utc_timestamp(),
        }

    return run_with_runtime(operation)


def register_parsers(subparsers) -> None:
    """Register tracked entity command parsers."""
    track_parser = subparsers.add_parser(
        "track",
        help="Manage tracked characters",
    )
    track_sub = track_parser.add_subparsers(dest="track_command", help="Track commands")

    # track add
    add_parser = track_sub.add_parser("add", help="Track a character")
    add_parser.add_argument("entity_id", type=int, help="Character ID")
    add_parser.add_argument("--name", help="Display name to store with the character")
    add_parser.set_defaults(func=cmd_track_add)

    # track remove
    remove_parser = track_sub.add_parser("remove", help="Stop tracking a character")
    remove_parser.add_argument("entity_id", type=int, help="Character ID")
    remove_parser.set_defaults(func=cmd_track_remove)

    # track list
    list_parser = track_sub.add_parser("list", help="List tracked characters")
    list_parser.set_defaults(func=cmd_track_list)
