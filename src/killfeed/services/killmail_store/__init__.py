"""
Killmail Store - Persistent Storage for Ingested Killmails.

Key Components:
- SQLiteKillmailStore: SQLite implementation with WAL mode and versioned migrations
- KillmailStore / KillmailTransaction: Protocols the ingestion services depend on
- Data classes: KillEvent, Victim, Attacker, Involvement, LossRecord, Checkpoint, ...

Usage:
    from killfeed.services.killmail_store import SQLiteKillmailStore

    store = SQLiteKillmailStore()
    await store.initialize()

    async with store.transaction() as tx:
        if await tx.insert_event(event):
            await tx.upsert_victim(event.kill_id, victim)

    cursor = await store.get_checkpoint("kills:90000001")
"""

from .migrations import MigrationRunner
from .protocol import (
    ROLE_ATTACKER,
    ROLE_VICTIM,
    Attacker,
    Checkpoint,
    Involvement,
    KillEvent,
    KillmailStore,
    KillmailTransaction,
    LossRecord,
    StoredAttacker,
    StoredInvolvement,
    StoreStats,
    TrackedEntity,
    Victim,
)
from .sqlite import SQLiteKillmailStore, SQLiteKillmailTransaction

__all__ = [
    # Store implementation
    "SQLiteKillmailStore",
    "SQLiteKillmailTransaction",
    "MigrationRunner",
    # Protocol
    "KillmailStore",
    "KillmailTransaction",
    "KillEvent",
    "Victim",
    "Attacker",
    "StoredAttacker",
    "Involvement",
    "StoredInvolvement",
    "LossRecord",
    "TrackedEntity",
    "Checkpoint",
    "StoreStats",
    "ROLE_VICTIM",
    "ROLE_ATTACKER",
]
