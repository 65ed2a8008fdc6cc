"""
Killfeed Commands

Command implementations for the killfeed CLI.
Each module handles a logical group of related commands.
"""

from . import backfill, ingest, listen, track

__all__ = ["backfill", "ingest", "listen", "track"]
