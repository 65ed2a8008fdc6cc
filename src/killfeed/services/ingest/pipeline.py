"""
Single-killmail ingestion.

KillmailIngestor.ingest() takes a kill id through the whole pipeline:

1. Skip kills already stored (killmails are immutable)
2. Fetch zKillboard's summary (hash, value, flags), unless the caller has it
3. Fetch ESI's authoritative detail
4. Keep the kill only if a tracked character is involved
5. Write event, victim, attackers, involvements and loss in one transaction

Failures never escape as exceptions: each call returns an IngestResult so a
backfill can keep going. Cancellation is the one exception that propagates.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from ...core.cancellation import CancelToken, OperationCancelledError
from ...core.circuit_breaker import CircuitOpenError
from ...core.logging import get_logger
from ...core.retry import NonRetryableFeedError, RetryableFeedError
from ..killmail_store import KillEvent, KillmailStore, LossRecord
from .clients import ESIKillmailClient, ZKillboardClient
from .models import EsiKillmail, ZKillRecord
from .sync import derive_involvements, plan_attacker_sync, plan_involvement_sync

logger = get_logger(__name__)


@dataclass
class IngestResult:
    """Outcome of ingesting one killmail."""

    kill_id: int
    success: bool = False
    existing: bool = False
    skipped: bool = False
    error: Optional[str] = None
    timestamp: Optional[datetime] = None
    age: Optional[int] = None  # whole days between kill time and ingestion

    def to_dict(self) -> dict[str, Any]:
        return {
            "kill_id": self.kill_id,
            "success": self.success,
            "existing": self.existing,
            "skipped": self.skipped,
            "error": self.error,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "age": self.age,
        }


class _AlreadyStored(Exception):
    """Another task inserted the event first; rolls back our transaction."""


def build_event(summary: ZKillRecord, detail: EsiKillmail) -> KillEvent:
    """
    Combine zKillboard metadata with ESI detail into the stored event.

    zKillboard's npc/solo flags win when present. Otherwise a kill is NPC when
    no attacker is a player character, and solo when it has exactly one
    attacker.
    """
    assert summary.zkb is not None
    zkb = summary.zkb
    attackers = detail.attackers

    is_npc = zkb.npc if zkb.npc is not None else all(a.character_id is None for a in attackers)
    is_solo = zkb.solo if zkb.solo is not None else len(attackers) == 1

    return KillEvent(
        kill_id=detail.killmail_id,
        kill_time=detail.killmail_time,
        solar_system_id=detail.solar_system_id,
        zkb_hash=zkb.hash,
        total_value=zkb.total_value,
        points=zkb.points,
        labels=tuple(zkb.labels),
        is_npc=is_npc,
        is_solo=is_solo,
        is_awox=zkb.awox,
        victim_ship_type_id=detail.victim.ship_type_id,
        attacker_count=len(attackers),
    )


class KillmailIngestor:
    """
    Ingests individual killmails into a KillmailStore.

    Args:
        store: Destination store
        zkill: zKillboard client (summaries)
        esi: ESI client (details)
        now: UTC clock used for the age calculation (injectable for tests)
    """

    def __init__(
        self,
        store: KillmailStore,
        zkill: ZKillboardClient,
        esi: ESIKillmailClient,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.zkill = zkill
        self.esi = esi
        self._now = now

    async def ingest(
        self,
        kill_id: int,
        token: CancelToken | None = None,
        *,
        refresh: bool = False,
        summary: ZKillRecord | None = None,
    ) -> IngestResult:
        """
        Ingest one killmail.

        Args:
            kill_id: Killmail to ingest
            token: Optional cancellation token
            refresh: Re-fetch an already stored kill and resynchronise its
                attackers, involvements, victim and loss (event facts are kept)
            summary: zKillboard metadata already in hand (live ingestion); skips
                the /killID/ lookup

        Returns:
            IngestResult describing what happened

        Raises:
            OperationCancelledError: If the token fires
        """
        try:
            return await self._ingest(kill_id, token, refresh, summary)
        except OperationCancelledError:
            raise
        except CircuitOpenError as e:
            logger.warning("Skipping killmail %d: %s", kill_id, e)
            return IngestResult(kill_id, skipped=True, error=str(e))
        except (RetryableFeedError, NonRetryableFeedError) as e:
            logger.warning(
                "Failed to fetch killmail %d: %s",
                kill_id,
                e.message,
                extra={"event": "ingest_failed", "kill_id": kill_id},
            )
            return IngestResult(kill_id, skipped=True, error=e.message)
        except Exception as e:
            logger.error("ingest(%d) error: %s", kill_id, e, exc_info=True)
            return IngestResult(kill_id, skipped=True, error=str(e))

    async def _ingest(
        self,
        kill_id: int,
        token: CancelToken | None,
        refresh: bool,
        summary: ZKillRecord | None,
    ) -> IngestResult:
        if not refresh and await self.store.kill_exists(kill_id):
            logger.debug("Skipping killmail %d, already stored", kill_id)
            return IngestResult(kill_id, existing=True, skipped=True)

        if summary is None:
            summary = await self.zkill.get_killmail_summary(kill_id, token)
        if summary is None or summary.zkb is None:
            logger.warning("No zKillboard data for killmail %d", kill_id)
            return IngestResult(kill_id, skipped=True)

        detail = await self.esi.get_killmail(
            kill_id, summary.zkb.hash, token, use_cache=not refresh
        )
        if detail is None or detail.killmail_id != kill_id:
            logger.warning("Invalid ESI data for killmail %d", kill_id)
            return IngestResult(kill_id, skipped=True)

        victim = detail.victim.to_victim()
        attackers = [a.to_attacker() for a in detail.attackers]

        tracked_ids = await self.store.get_tracked_entity_ids()
        involvements = derive_involvements(victim, attackers, tracked_ids)
        # A refresh of a stored kill still runs so rows of untracked characters go away
        if not involvements and not (refresh and await self.store.kill_exists(kill_id)):
            logger.debug("No tracked characters in killmail %d", kill_id)
            return IngestResult(kill_id, skipped=True)

        event = build_event(summary, detail)

        try:
            async with self.store.transaction() as tx:
                inserted = await tx.insert_event(event)
                if not inserted and not refresh:
                    raise _AlreadyStored()

                await tx.upsert_victim(kill_id, victim)

                attacker_plan = plan_attacker_sync(await tx.find_attackers(kill_id), attackers)
                await tx.delete_attackers([row.row_id for row in attacker_plan.to_delete])
                await tx.create_attackers(kill_id, attacker_plan.to_create)

                involvement_plan = plan_involvement_sync(
                    await tx.find_involvements(kill_id), involvements
                )
                await tx.delete_involvements([row.row_id for row in involvement_plan.to_delete])
                await tx.create_involvements(kill_id, involvement_plan.to_create)

                if victim.character_id is not None and victim.character_id in tracked_ids:
                    await tx.upsert_loss(
                        LossRecord(
                            kill_id=kill_id,
                            character_id=victim.character_id,
                            kill_time=event.kill_time,
                            ship_type_id=victim.ship_type_id,
                            solar_system_id=event.solar_system_id,
                            total_value=event.total_value,
                            attacker_count=event.attacker_count,
                            labels=event.labels,
                        )
                    )
                else:
                    await tx.delete_loss(kill_id)
        except _AlreadyStored:
            logger.debug("Killmail %d was stored concurrently", kill_id)
            return IngestResult(kill_id, existing=True, skipped=True)

        logger.debug(
            "Stored killmail %d: attackers -%d/+%d (%d kept), involvements -%d/+%d",
            kill_id,
            len(attacker_plan.to_delete),
            len(attacker_plan.to_create),
            attacker_plan.unchanged_count,
            len(involvement_plan.to_delete),
            len(involvement_plan.to_create),
        )

        age = (self._now() - event.kill_time).days
        return IngestResult(
            kill_id,
            success=True,
            existing=not inserted,
            timestamp=event.kill_time,
            age=age,
        )
