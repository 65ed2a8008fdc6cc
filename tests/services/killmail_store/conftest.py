"""Fixtures for killmail_store tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from killfeed.services.killmail_store import (
    Attacker,
    KillEvent,
    LossRecord,
    SQLiteKillmailStore,
    Victim,
)

KILL_TIME = datetime(2026, 1, 26, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test_killfeed.db"


@pytest_asyncio.fixture
async def store(temp_db_path: Path) -> AsyncGenerator[SQLiteKillmailStore, None]:
    """Create and initialize a test store."""
    store = SQLiteKillmailStore(db_path=temp_db_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def sample_event() -> KillEvent:
    """Create a sample kill event."""
    return KillEvent(
        kill_id=123456789,
        kill_time=KILL_TIME,
        solar_system_id=30000142,  # Jita
        zkb_hash="abc123def456",
        total_value=1_500_000_000.0,
        points=100,
        labels=("pvp", "highsec"),
        is_npc=False,
        is_solo=False,
        is_awox=False,
        victim_ship_type_id=670,  # Capsule
        attacker_count=2,
    )


@pytest.fixture
def sample_victim() -> Victim:
    return Victim(
        ship_type_id=670,
        damage_taken=1000,
        character_id=95000001,
        corporation_id=98000001,
    )


@pytest.fixture
def sample_attackers() -> list[tuple[int, Attacker]]:
    """(position, attacker) pairs in feed order."""
    return [
        (
            0,
            Attacker(
                damage_done=700,
                final_blow=True,
                security_status=-1.5,
                character_id=90000001,
                corporation_id=98000002,
                ship_type_id=17738,
                weapon_type_id=2977,
            ),
        ),
        (
            1,
            Attacker(
                damage_done=300,
                final_blow=False,
                security_status=0.0,
                corporation_id=1000125,  # NPC corp, no character
                ship_type_id=23913,
            ),
        ),
    ]


@pytest.fixture
def sample_loss(sample_event: KillEvent) -> LossRecord:
    return LossRecord(
        kill_id=sample_event.kill_id,
        character_id=90000001,
        kill_time=sample_event.kill_time,
        ship_type_id=587,
        solar_system_id=sample_event.solar_system_id,
        total_value=sample_event.total_value,
        attacker_count=2,
        labels=sample_event.labels,
    )
