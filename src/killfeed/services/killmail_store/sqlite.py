"""
SQLite Implementation of the Killmail Store.

Uses WAL mode so external readers (status commands, ad-hoc queries) never block
the ingesting process.

Within one process every concurrent backfill shares a single aiosqlite
connection. An asyncio.Lock serializes access to it: a transaction holds the
lock from BEGIN to COMMIT/ROLLBACK, and reads take the same lock so they never
observe another task's uncommitted rows.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from .migrations import MigrationRunner
from .protocol import (
    Attacker,
    Checkpoint,
    Involvement,
    KillEvent,
    LossRecord,
    StoredAttacker,
    StoredInvolvement,
    StoreStats,
    TrackedEntity,
    Victim,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


# =============================================================================
# Row Mapping
# =============================================================================


def _row_to_event(row: aiosqlite.Row) -> KillEvent:
    return KillEvent(
        kill_id=row["kill_id"],
        kill_time=_from_epoch(row["kill_time"]),  # type: ignore[arg-type]
        solar_system_id=row["solar_system_id"],
        zkb_hash=row["zkb_hash"],
        total_value=row["total_value"],
        points=row["points"],
        labels=tuple(json.loads(row["labels"])),
        is_npc=bool(row["is_npc"]),
        is_solo=bool(row["is_solo"]),
        is_awox=bool(row["is_awox"]),
        victim_ship_type_id=row["victim_ship_type_id"],
        attacker_count=row["attacker_count"],
    )


def _row_to_attacker(row: aiosqlite.Row) -> StoredAttacker:
    return StoredAttacker(
        row_id=row["id"],
        position=row["position"],
        attacker=Attacker(
            damage_done=row["damage_done"],
            final_blow=bool(row["final_blow"]),
            security_status=row["security_status"],
            character_id=row["character_id"],
            corporation_id=row["corporation_id"],
            alliance_id=row["alliance_id"],
            ship_type_id=row["ship_type_id"],
            weapon_type_id=row["weapon_type_id"],
        ),
    )


def _row_to_involvement(row: aiosqlite.Row) -> StoredInvolvement:
    return StoredInvolvement(
        row_id=row["id"],
        involvement=Involvement(character_id=row["character_id"], role=row["role"]),
    )


def _row_to_tracked(row: aiosqlite.Row) -> TrackedEntity:
    return TrackedEntity(
        entity_id=row["entity_id"],
        name=row["name"],
        added_at=_from_epoch(row["added_at"]),  # type: ignore[arg-type]
        last_backfill_at=_from_epoch(row["last_backfill_at"]),
    )


def _row_to_checkpoint(row: aiosqlite.Row) -> Checkpoint:
    return Checkpoint(
        stream_name=row["stream_name"],
        last_seen_id=row["last_seen_id"],
        last_seen_time=_from_epoch(row["last_seen_time"]),  # type: ignore[arg-type]
    )


# =============================================================================
# Queries shared by transactions and plain reads
# =============================================================================


async def _select_attackers(db: aiosqlite.Connection, kill_id: int) -> list[StoredAttacker]:
    cursor = await db.execute(
        """
        SELECT id, position, character_id, corporation_id, alliance_id, damage_done,
               final_blow, security_status, ship_type_id, weapon_type_id
        FROM attackers
        WHERE kill_id = ?
        ORDER BY position
        """,
        (kill_id,),
    )
    return [_row_to_attacker(row) for row in await cursor.fetchall()]


async def _select_involvements(db: aiosqlite.Connection, kill_id: int) -> list[StoredInvolvement]:
    cursor = await db.execute(
        "SELECT id, character_id, role FROM involvements WHERE kill_id = ? ORDER BY id",
        (kill_id,),
    )
    return [_row_to_involvement(row) for row in await cursor.fetchall()]


async def _delete_ids(db: aiosqlite.Connection, table: str, row_ids: Iterable[int]) -> int:
    ids = list(row_ids)
    if not ids:
        return 0
    cursor = await db.execute(f"DELETE FROM {table} WHERE id IN ({_placeholders(len(ids))})", ids)
    return cursor.rowcount


# =============================================================================
# Transaction
# =============================================================================


class SQLiteKillmailTransaction:
    """KillmailTransaction bound to an open BEGIN IMMEDIATE on the store connection."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def insert_event(self, event: KillEvent) -> bool:
        cursor = await self._db.execute(
            """
            INSERT INTO killmails (
                kill_id, kill_time, solar_system_id, zkb_hash, total_value, points,
                labels, is_npc, is_solo, is_awox, victim_ship_type_id, attacker_count,
                ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(kill_id) DO NOTHING
            """,
            (
                event.kill_id,
                _to_epoch(event.kill_time),
                event.solar_system_id,
                event.zkb_hash,
                event.total_value,
                event.points,
                json.dumps(list(event.labels)),
                event.is_npc,
                event.is_solo,
                event.is_awox,
                event.victim_ship_type_id,
                event.attacker_count,
                _to_epoch(_utcnow()),
            ),
        )
        return cursor.rowcount > 0

    async def upsert_victim(self, kill_id: int, victim: Victim) -> None:
        await self._db.execute(
            """
            INSERT INTO victims (
                kill_id, character_id, corporation_id, alliance_id, ship_type_id, damage_taken
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(kill_id) DO UPDATE SET
                character_id = excluded.character_id,
                corporation_id = excluded.corporation_id,
                alliance_id = excluded.alliance_id,
                ship_type_id = excluded.ship_type_id,
                damage_taken = excluded.damage_taken
            """,
            (
                kill_id,
                victim.character_id,
                victim.corporation_id,
                victim.alliance_id,
                victim.ship_type_id,
                victim.damage_taken,
            ),
        )

    async def find_attackers(self, kill_id: int) -> list[StoredAttacker]:
        return await _select_attackers(self._db, kill_id)

    async def delete_attackers(self, row_ids: list[int]) -> int:
        return await _delete_ids(self._db, "attackers", row_ids)

    async def create_attackers(self, kill_id: int, attackers: list[tuple[int, Attacker]]) -> int:
        if not attackers:
            return 0
        await self._db.executemany(
            """
            INSERT INTO attackers (
                kill_id, position, character_id, corporation_id, alliance_id,
                damage_done, final_blow, security_status, ship_type_id, weapon_type_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    kill_id,
                    position,
                    a.character_id,
                    a.corporation_id,
                    a.alliance_id,
                    a.damage_done,
                    a.final_blow,
                    a.security_status,
                    a.ship_type_id,
                    a.weapon_type_id,
                )
                for position, a in attackers
            ],
        )
        return len(attackers)

    async def find_involvements(self, kill_id: int) -> list[StoredInvolvement]:
        return await _select_involvements(self._db, kill_id)

    async def delete_involvements(self, row_ids: list[int]) -> int:
        return await _delete_ids(self._db, "involvements", row_ids)

    async def create_involvements(self, kill_id: int, involvements: list[Involvement]) -> int:
        if not involvements:
            return 0
        await self._db.executemany(
            "INSERT INTO involvements (kill_id, character_id, role) VALUES (?, ?, ?)",
            [(kill_id, inv.character_id, inv.role) for inv in involvements],
        )
        return len(involvements)

    async def upsert_loss(self, loss: LossRecord) -> None:
        await self._db.execute(
            """
            INSERT INTO losses (
                kill_id, character_id, kill_time, ship_type_id, solar_system_id,
                total_value, attacker_count, labels
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(kill_id) DO UPDATE SET
                character_id = excluded.character_id,
                kill_time = excluded.kill_time,
                ship_type_id = excluded.ship_type_id,
                solar_system_id = excluded.solar_system_id,
                total_value = excluded.total_value,
                attacker_count = excluded.attacker_count,
                labels = excluded.labels
            """,
            (
                loss.kill_id,
                loss.character_id,
                _to_epoch(loss.kill_time),
                loss.ship_type_id,
                loss.solar_system_id,
                loss.total_value,
                loss.attacker_count,
                json.dumps(list(loss.labels)),
            ),
        )

    async def delete_loss(self, kill_id: int) -> bool:
        cursor = await self._db.execute("DELETE FROM losses WHERE kill_id = ?", (kill_id,))
        return cursor.rowcount > 0


# =============================================================================
# Store
# =============================================================================


class SQLiteKillmailStore:
    """
    SQLite implementation of KillmailStore.

    See migrations/001_initial_schema.sql for table definitions.

    Connection configuration:
        isolation_level=None (explicit BEGIN IMMEDIATE / COMMIT)
        PRAGMA journal_mode=WAL
        PRAGMA busy_timeout=5000
        PRAGMA synchronous=NORMAL
        PRAGMA foreign_keys=ON
    """

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize the store.

        Args:
            db_path: Path to database file. Defaults to {instance_root}/cache/killfeed.db.
        """
        if db_path is None:
            from ...core.config import get_settings

            db_path = get_settings().killmail_db_path

        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Initialize database, running migrations if needed.

        Must be called before any other operations.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        runner = MigrationRunner(self._db)
        await runner.run_migrations()

        self._db.row_factory = aiosqlite.Row

        logger.info("Killmail store initialized: %s", self.db_path)

    async def close(self) -> None:
        """Close the store and release resources."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Killmail store closed")

    async def __aenter__(self) -> SQLiteKillmailStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        """Get the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteKillmailTransaction]:
        """
        Run a write transaction.

        Commits on clean exit; rolls back and re-raises on any exception
        (including task cancellation).
        """
        db = self.db
        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield SQLiteKillmailTransaction(db)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")

    async def _fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        async with self._lock:
            cursor = await self.db.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._lock:
            cursor = await self.db.execute(sql, params)
            return list(await cursor.fetchall())

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        """Run one autocommitted write, returning the affected row count."""
        async with self._lock:
            cursor = await self.db.execute(sql, params)
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Killmail Reads
    # -------------------------------------------------------------------------

    async def kill_exists(self, kill_id: int) -> bool:
        row = await self._fetchone("SELECT 1 FROM killmails WHERE kill_id = ?", (kill_id,))
        return row is not None

    async def get_kill(self, kill_id: int) -> KillEvent | None:
        row = await self._fetchone("SELECT * FROM killmails WHERE kill_id = ?", (kill_id,))
        return _row_to_event(row) if row else None

    async def get_victim(self, kill_id: int) -> Victim | None:
        row = await self._fetchone("SELECT * FROM victims WHERE kill_id = ?", (kill_id,))
        if row is None:
            return None
        return Victim(
            ship_type_id=row["ship_type_id"],
            damage_taken=row["damage_taken"],
            character_id=row["character_id"],
            corporation_id=row["corporation_id"],
            alliance_id=row["alliance_id"],
        )

    async def get_attackers(self, kill_id: int) -> list[StoredAttacker]:
        async with self._lock:
            return await _select_attackers(self.db, kill_id)

    async def get_involvements(self, kill_id: int) -> list[StoredInvolvement]:
        async with self._lock:
            return await _select_involvements(self.db, kill_id)

    async def get_loss(self, kill_id: int) -> LossRecord | None:
        row = await self._fetchone("SELECT * FROM losses WHERE kill_id = ?", (kill_id,))
        if row is None:
            return None
        return LossRecord(
            kill_id=row["kill_id"],
            character_id=row["character_id"],
            kill_time=_from_epoch(row["kill_time"]),  # type: ignore[arg-type]
            ship_type_id=row["ship_type_id"],
            solar_system_id=row["solar_system_id"],
            total_value=row["total_value"],
            attacker_count=row["attacker_count"],
            labels=tuple(json.loads(row["labels"])),
        )

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def get_checkpoint(self, stream_name: str) -> Checkpoint | None:
        row = await self._fetchone(
            "SELECT stream_name, last_seen_id, last_seen_time FROM checkpoints WHERE stream_name = ?",
            (stream_name,),
        )
        return _row_to_checkpoint(row) if row else None

    async def advance_checkpoint(
        self, stream_name: str, last_seen_id: int, seen_at: datetime
    ) -> bool:
        """Forward-only upsert; the WHERE clause keeps concurrent writers from regressing it."""
        changed = await self._execute(
            """
            INSERT INTO checkpoints (stream_name, last_seen_id, last_seen_time)
            VALUES (?, ?, ?)
            ON CONFLICT(stream_name) DO UPDATE SET
                last_seen_id = excluded.last_seen_id,
                last_seen_time = excluded.last_seen_time
            WHERE excluded.last_seen_id > checkpoints.last_seen_id
            """,
            (stream_name, last_seen_id, _to_epoch(seen_at)),
        )
        return changed > 0

    async def list_checkpoints(self) -> list[Checkpoint]:
        rows = await self._fetchall(
            "SELECT stream_name, last_seen_id, last_seen_time FROM checkpoints ORDER BY stream_name"
        )
        return [_row_to_checkpoint(row) for row in rows]

    # -------------------------------------------------------------------------
    # Tracked Entities
    # -------------------------------------------------------------------------

    async def add_tracked_entity(self, entity_id: int, name: str | None = None) -> TrackedEntity:
        await self._execute(
            """
            INSERT INTO tracked_entities (entity_id, name, added_at)
            VALUES (?, ?, ?)
            ON CONFLICT(entity_id) DO UPDATE SET
                name = COALESCE(excluded.name, tracked_entities.name)
            """,
            (entity_id, name, _to_epoch(_utcnow())),
        )
        entity = await self.get_tracked_entity(entity_id)
        assert entity is not None
        return entity

    async def remove_tracked_entity(self, entity_id: int) -> bool:
        removed = await self._execute(
            "DELETE FROM tracked_entities WHERE entity_id = ?", (entity_id,)
        )
        return removed > 0

    async def get_tracked_entity(self, entity_id: int) -> TrackedEntity | None:
        row = await self._fetchone(
            "SELECT * FROM tracked_entities WHERE entity_id = ?", (entity_id,)
        )
        return _row_to_tracked(row) if row else None

    async def list_tracked_entities(self) -> list[TrackedEntity]:
        rows = await self._fetchall("SELECT * FROM tracked_entities ORDER BY entity_id")
        return [_row_to_tracked(row) for row in rows]

    async def get_tracked_entity_ids(self) -> set[int]:
        rows = await self._fetchall("SELECT entity_id FROM tracked_entities")
        return {row["entity_id"] for row in rows}

    async def get_last_backfill(self, entity_id: int) -> datetime | None:
        row = await self._fetchone(
            "SELECT last_backfill_at FROM tracked_entities WHERE entity_id = ?", (entity_id,)
        )
        return _from_epoch(row["last_backfill_at"]) if row else None

    async def mark_backfill_complete(self, entity_id: int, at: datetime | None = None) -> None:
        await self._execute(
            "UPDATE tracked_entities SET last_backfill_at = ? WHERE entity_id = ?",
            (_to_epoch(at or _utcnow()), entity_id),
        )

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    async def get_stats(self) -> StoreStats:
        """Get storage statistics for observability."""
        counts: dict[str, int] = {}
        for table in (
            "killmails",
            "attackers",
            "involvements",
            "losses",
            "tracked_entities",
            "checkpoints",
        ):
            row = await self._fetchone(f"SELECT COUNT(*) FROM {table}")
            counts[table] = row[0] if row else 0

        row = await self._fetchone("SELECT MIN(kill_time), MAX(kill_time) FROM killmails")
        oldest_time = _from_epoch(row[0]) if row else None
        newest_time = _from_epoch(row[1]) if row else None

        try:
            db_size = self.db_path.stat().st_size
        except OSError:
            db_size = 0

        return StoreStats(
            total_killmails=counts["killmails"],
            total_attackers=counts["attackers"],
            total_involvements=counts["involvements"],
            total_losses=counts["losses"],
            tracked_entities=counts["tracked_entities"],
            checkpoints=counts["checkpoints"],
            oldest_killmail_time=oldest_time,
            newest_killmail_time=newest_time,
            database_size_bytes=db_size,
        )
