"""
Killfeed Test Suite - Shared Fixtures and Configuration

Provides:
- Automatic reset of settings and logging between tests
- A fake clock for breaker, limiter and cache timing
- FakeUpstream: an httpx.MockTransport handler standing in for zKillboard, ESI and RedisQ
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest

ZKILL_HOST = "zkillboard.test"
ESI_HOST = "esi.test"
REDISQ_HOST = "redisq.test"

# Character IDs used throughout the suite
TRACKED_PILOT = 90000001
OTHER_TRACKED_PILOT = 90000002
UNTRACKED_PILOT = 95000001
UNTRACKED_ATTACKER = 91000002


# =============================================================================
# Singleton Reset
# =============================================================================


@pytest.fixture(autouse=True)
def reset_killfeed_state(tmp_path, monkeypatch):
    """
    Reset module-level singletons between tests.

    Settings are re-read from an environment pointing the instance root at a
    temporary directory, and logging is restored so caplog sees records.
    """
    monkeypatch.setenv("KILLFEED_INSTANCE_ROOT", str(tmp_path / "instance"))
    for var in (
        "KILLFEED_DB_PATH",
        "KILLFEED_LOG_LEVEL",
        "KILLFEED_DEBUG",
        "KILLFEED_LOG_JSON",
        "KILLFEED_NO_RETRY",
    ):
        monkeypatch.delenv(var, raising=False)

    def do_reset():
        from killfeed.core.config import reset_settings
        from killfeed.core.logging import reset_logging

        reset_settings()
        reset_logging()

    do_reset()
    yield
    do_reset()


# =============================================================================
# Fake Clock
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock with a recording sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Fake zKillboard / ESI / RedisQ
# =============================================================================


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeUpstream:
    """
    In-memory zKillboard, ESI and RedisQ.

    Serves kill summaries (/killID/), character feed pages, ESI killmails and
    RedisQ packages from in-memory state, with optional queued failure
    statuses per path.
    """

    zkill_base_url = f"https://{ZKILL_HOST}/api"
    esi_base_url = f"https://{ESI_HOST}/latest"
    redisq_base_url = f"https://{REDISQ_HOST}"

    def __init__(self):
        self.now = datetime.now(timezone.utc).replace(microsecond=0)
        self.summaries: dict[int, dict[str, Any]] = {}
        self.details: dict[int, dict[str, Any]] = {}
        self.pages: dict[tuple[str, int, int], list[dict[str, Any]]] = {}
        self.packages: list[dict[str, Any]] = []
        self.failures: dict[str, list[int]] = {}
        self.raw: dict[str, tuple[int, Any]] = {}
        self.esi_status: Optional[int] = None
        self.requests: list[httpx.Request] = []

    # -------------------------------------------------------------------------
    # Data setup
    # -------------------------------------------------------------------------

    def add_kill(
        self,
        kill_id: int,
        victim_id: Optional[int] = UNTRACKED_PILOT,
        attacker_ids: tuple[Optional[int], ...] = (TRACKED_PILOT,),
        *,
        age: timedelta = timedelta(hours=1),
        value: float = 150_000_000.0,
        npc: Optional[bool] = False,
        solo: Optional[bool] = None,
        labels: tuple[str, ...] = ("pvp",),
        solar_system_id: int = 30000142,
    ) -> dict[str, Any]:
        """
        Register a kill with both services.

        Returns:
            The zKillboard feed entry for the kill
        """
        kill_time = self.now - age
        zkb: dict[str, Any] = {
            "hash": f"hash{kill_id}",
            "totalValue": value,
            "points": 10,
            "awox": False,
            "labels": list(labels),
        }
        if npc is not None:
            zkb["npc"] = npc
        if solo is not None:
            zkb["solo"] = solo

        self.summaries[kill_id] = zkb
        self.details[kill_id] = {
            "killmail_id": kill_id,
            "killmail_time": _iso(kill_time),
            "solar_system_id": solar_system_id,
            "victim": {
                "character_id": victim_id,
                "corporation_id": 98000001,
                "ship_type_id": 587,
                "damage_taken": 2500,
            },
            "attackers": [
                {
                    "character_id": attacker_id,
                    "corporation_id": 98000002,
                    "damage_done": 2500 // max(1, len(attacker_ids)),
                    "final_blow": index == 0,
                    "security_status": -1.5,
                    "ship_type_id": 17738,
                    "weapon_type_id": 2977,
                }
                for index, attacker_id in enumerate(attacker_ids)
            ],
        }
        return {"killmail_id": kill_id, "killmail_time": _iso(kill_time), "zkb": zkb}

    def push_package(self, kill_id: int, *, embed_killmail: bool = True, **kill) -> dict[str, Any]:
        """
        Register a kill and queue it for delivery by RedisQ.

        Returns:
            The queued package
        """
        self.add_kill(kill_id, **kill)
        package: dict[str, Any] = {"killID": kill_id, "zkb": self.summaries[kill_id]}
        if embed_killmail:
            package["killmail"] = self.details[kill_id]
        self.packages.append(package)
        return package

    def set_page(self, kind: str, entity_id: int, page: int, entries: list[dict[str, Any]]) -> None:
        self.pages[(kind, entity_id, page)] = entries

    def fail(self, path: str, *statuses: int) -> None:
        """Serve ``statuses`` (in order) for ``path`` before answering normally."""
        self.failures.setdefault(path, []).extend(statuses)

    def count(self, fragment: str) -> int:
        """Number of requests whose path contains ``fragment``."""
        return sum(1 for r in self.requests if fragment in r.url.path)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        queued = self.failures.get(path)
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "upstream unavailable"})
        if path in self.raw:
            status, body = self.raw[path]
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)

        if request.url.host == ZKILL_HOST:
            return self._zkill(path.removeprefix("/api"))
        if request.url.host == ESI_HOST:
            if self.esi_status is not None:
                return httpx.Response(self.esi_status, json={"error": "ESI unavailable"})
            return self._esi(path.removeprefix("/latest"))
        if request.url.host == REDISQ_HOST and path == "/listen.php":
            package = self.packages.pop(0) if self.packages else None
            return httpx.Response(200, json={"package": package})
        return httpx.Response(404, json={"error": "unknown host"})

    def _zkill(self, path: str) -> httpx.Response:
        match = re.fullmatch(r"/killID/(\d+)/", path)
        if match:
            kill_id = int(match.group(1))
            zkb = self.summaries.get(kill_id)
            return httpx.Response(200, json=[{"killmail_id": kill_id, "zkb": zkb}] if zkb else [])

        match = re.fullmatch(r"/(kills|losses)/characterID/(\d+)/page/(\d+)/", path)
        if match:
            key = (match.group(1), int(match.group(2)), int(match.group(3)))
            return httpx.Response(200, json=self.pages.get(key, []))

        return httpx.Response(404, json={"error": "not found"})

    def _esi(self, path: str) -> httpx.Response:
        match = re.fullmatch(r"/killmails/(\d+)/(\w+)/", path)
        if match:
            kill_id = int(match.group(1))
            detail = self.details.get(kill_id)
            if detail is not None and match.group(2) == f"hash{kill_id}":
                return httpx.Response(200, json=detail)
        return httpx.Response(404, json={"error": "Killmail not found"})


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()
