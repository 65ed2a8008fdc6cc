"""
Killmail Store Protocol Interface.

This file defines the abstract interface for killmail storage implementations.

The ingestion pipeline, the checkpoint store and the backfill driver only
depend on these protocols; SQLiteKillmailStore is the shipped implementation.
"""

from __future__ import annotations

from abc import abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol, runtime_checkable

ROLE_VICTIM = "victim"
ROLE_ATTACKER = "attacker"

InvolvementRole = Literal["victim", "attacker"]

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class KillEvent:
    """
    One killmail's immutable facts.

    Written once; never updated or deleted by the pipeline.
    """

    kill_id: int
    kill_time: datetime  # timezone-aware UTC
    solar_system_id: int
    zkb_hash: str
    total_value: float
    points: int
    labels: tuple[str, ...] = ()
    is_npc: bool = False
    is_solo: bool = False
    is_awox: bool = False
    victim_ship_type_id: int | None = None
    attacker_count: int = 0


@dataclass(frozen=True)
class Victim:
    """The destroyed ship and its owner. Exactly one per kill."""

    ship_type_id: int
    damage_taken: int
    character_id: int | None = None
    corporation_id: int | None = None
    alliance_id: int | None = None


@dataclass(frozen=True)
class Attacker:
    """One attacker on a killmail. Equality is full-field equality."""

    damage_done: int
    final_blow: bool
    security_status: float
    character_id: int | None = None
    corporation_id: int | None = None
    alliance_id: int | None = None
    ship_type_id: int | None = None
    weapon_type_id: int | None = None


@dataclass(frozen=True)
class StoredAttacker:
    """An attacker row as persisted: storage identity plus feed order."""

    row_id: int
    position: int
    attacker: Attacker


@dataclass(frozen=True)
class Involvement:
    """A tracked character's role on a kill."""

    character_id: int
    role: InvolvementRole

    @property
    def key(self) -> str:
        return f"{self.character_id}-{self.role}"


@dataclass(frozen=True)
class StoredInvolvement:
    row_id: int
    involvement: Involvement

    @property
    def key(self) -> str:
        return self.involvement.key


@dataclass(frozen=True)
class LossRecord:
    """A kill seen from the tracked victim's side."""

    kill_id: int
    character_id: int
    kill_time: datetime
    ship_type_id: int
    solar_system_id: int
    total_value: float
    attacker_count: int
    labels: tuple[str, ...] = ()


@dataclass
class TrackedEntity:
    """A character whose kills and losses are ingested."""

    entity_id: int
    added_at: datetime
    name: str | None = None
    last_backfill_at: datetime | None = None


@dataclass
class Checkpoint:
    """Resume cursor for one backfill stream."""

    stream_name: str
    last_seen_id: int
    last_seen_time: datetime


@dataclass
class StoreStats:
    """Storage statistics for observability."""

    total_killmails: int
    total_attackers: int
    total_involvements: int
    total_losses: int
    tracked_entities: int
    checkpoints: int
    oldest_killmail_time: datetime | None
    newest_killmail_time: datetime | None
    database_size_bytes: int


# =============================================================================
# Protocol Interfaces
# =============================================================================


@runtime_checkable
class KillmailTransaction(Protocol):
    """
    Writes for one kill, applied atomically.

    Obtained from KillmailStore.transaction(); everything done through it is
    committed together on clean exit and rolled back on exception.
    """

    @abstractmethod
    async def insert_event(self, event: KillEvent) -> bool:
        """
        Insert the event row.

        Returns:
            False if a row with this kill_id already exists (nothing written).
        """
        ...

    @abstractmethod
    async def upsert_victim(self, kill_id: int, victim: Victim) -> None: ...

    @abstractmethod
    async def find_attackers(self, kill_id: int) -> list[StoredAttacker]:
        """Attackers of a kill ordered by position."""
        ...

    @abstractmethod
    async def delete_attackers(self, row_ids: list[int]) -> int: ...

    @abstractmethod
    async def create_attackers(self, kill_id: int, attackers: list[tuple[int, Attacker]]) -> int:
        """
        Insert attackers.

        Args:
            kill_id: Parent kill
            attackers: (position, attacker) pairs
        """
        ...

    @abstractmethod
    async def find_involvements(self, kill_id: int) -> list[StoredInvolvement]: ...

    @abstractmethod
    async def delete_involvements(self, row_ids: list[int]) -> int: ...

    @abstractmethod
    async def create_involvements(self, kill_id: int, involvements: list[Involvement]) -> int: ...

    @abstractmethod
    async def upsert_loss(self, loss: LossRecord) -> None: ...

    @abstractmethod
    async def delete_loss(self, kill_id: int) -> bool:
        """
        Remove the loss row of a kill.

        Returns:
            True if a row was deleted
        """
        ...


@runtime_checkable
class KillmailStore(Protocol):
    """
    Abstract interface for killmail storage.

    Implementations must be async-compatible and safe to share between
    concurrently running backfills.

    Design notes:
    - kill_id is globally unique (assigned by CCP)
    - Event rows are immutable; only attackers, involvements, victims and
      losses are written again on refresh
    - Checkpoints only move forward
    """

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the store, running migrations if needed.

        Must be called before any other operations.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store and release resources."""
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[KillmailTransaction]:
        """Open a write transaction for one kill."""
        ...

    # -------------------------------------------------------------------------
    # Killmail Reads
    # -------------------------------------------------------------------------

    @abstractmethod
    async def kill_exists(self, kill_id: int) -> bool: ...

    @abstractmethod
    async def get_kill(self, kill_id: int) -> KillEvent | None: ...

    @abstractmethod
    async def get_victim(self, kill_id: int) -> Victim | None: ...

    @abstractmethod
    async def get_attackers(self, kill_id: int) -> list[StoredAttacker]: ...

    @abstractmethod
    async def get_involvements(self, kill_id: int) -> list[StoredInvolvement]: ...

    @abstractmethod
    async def get_loss(self, kill_id: int) -> LossRecord | None: ...

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_checkpoint(self, stream_name: str) -> Checkpoint | None:
        """Returns None if the stream has never been backfilled (cold start)."""
        ...

    @abstractmethod
    async def advance_checkpoint(
        self, stream_name: str, last_seen_id: int, seen_at: datetime
    ) -> bool:
        """
        Move the stream's cursor forward.

        Returns:
            True if the cursor moved; False if last_seen_id was not greater
            than the stored value (nothing written).
        """
        ...

    @abstractmethod
    async def list_checkpoints(self) -> list[Checkpoint]: ...

    # -------------------------------------------------------------------------
    # Tracked Entities
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_tracked_entity(self, entity_id: int, name: str | None = None) -> TrackedEntity:
        """Start tracking an entity (idempotent; an existing name is kept unless given)."""
        ...

    @abstractmethod
    async def remove_tracked_entity(self, entity_id: int) -> bool: ...

    @abstractmethod
    async def get_tracked_entity(self, entity_id: int) -> TrackedEntity | None: ...

    @abstractmethod
    async def list_tracked_entities(self) -> list[TrackedEntity]: ...

    @abstractmethod
    async def get_tracked_entity_ids(self) -> set[int]: ...

    @abstractmethod
    async def get_last_backfill(self, entity_id: int) -> datetime | None: ...

    @abstractmethod
    async def mark_backfill_complete(self, entity_id: int, at: datetime | None = None) -> None: ...

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_stats(self) -> StoreStats:
        """Get storage statistics for observability."""
        ...
