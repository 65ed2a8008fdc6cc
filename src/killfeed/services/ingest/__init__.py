"""
Killmail Ingestion Services.

Key Components:
- KillmailIngestor: Fetches, filters and stores one killmail atomically
- BackfillDriver: Resumable, bounded, cursor-driven backfill of character feeds
- RedisQListener: Live ingestion of kills pushed by zKillboard's RedisQ
- CheckpointStore: Forward-only stream cursors
- ZKillboardClient / ESIKillmailClient: Typed clients over the resilient HTTP layer
- sync: Diff-minimising synchronisation of attackers and involvements
- IngestRuntime: Builds the whole object graph from settings

Usage:
    from killfeed.services.ingest import IngestRuntime

    async with IngestRuntime.from_settings(get_settings()) as runtime:
        summary = await runtime.driver.backfill(90000001, kind="kills")
"""

from .backfill import BackfillDriver, BackfillLimits, BackfillSummary
from .checkpoint import CheckpointStore, stream_name
from .clients import FEED_KINDS, ESIKillmailClient, FeedKind, ZKillboardClient
from .listener import ListenerStats, RedisQListener
from .models import EsiAttacker, EsiKillmail, EsiVictim, RedisQPackage, ZkbInfo, ZKillRecord
from .pipeline import IngestResult, KillmailIngestor, build_event
from .runtime import IngestRuntime
from .sync import (
    SyncPlan,
    derive_involvements,
    plan_attacker_sync,
    plan_involvement_sync,
    sync_by_key,
    sync_children,
)

__all__ = [
    # Runtime
    "IngestRuntime",
    # Pipeline
    "KillmailIngestor",
    "IngestResult",
    "build_event",
    # Backfill
    "BackfillDriver",
    "BackfillLimits",
    "BackfillSummary",
    # Live ingestion
    "RedisQListener",
    "ListenerStats",
    # Checkpoints
    "CheckpointStore",
    "stream_name",
    # Clients
    "ZKillboardClient",
    "ESIKillmailClient",
    "FeedKind",
    "FEED_KINDS",
    # Payload models
    "ZKillRecord",
    "ZkbInfo",
    "RedisQPackage",
    "EsiKillmail",
    "EsiVictim",
    "EsiAttacker",
    # Sync
    "SyncPlan",
    "sync_children",
    "sync_by_key",
    "plan_attacker_sync",
    "plan_involvement_sync",
    "derive_involvements",
]
