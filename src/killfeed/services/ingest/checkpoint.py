"""
Resumable backfill cursors.

Each (feed kind, entity) pair is one stream with a cursor holding the highest
kill id ever ingested from it. Cursors only move forward: the forward-only
check runs inside the store's upsert, so two concurrent backfills of the same
stream cannot move it backwards.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from ...core.logging import get_logger
from ..killmail_store import Checkpoint, KillmailStore

logger = get_logger(__name__)


def stream_name(kind: str, entity_id: int) -> str:
    """Name of the cursor stream for ``kind`` ("kills" or "losses") of an entity."""
    return f"{kind}:{entity_id}"


class CheckpointStore:
    """
    Cursor persistence on top of a KillmailStore.

    Args:
        store: Backing store
        now: UTC clock (injectable for tests)
    """

    def __init__(
        self,
        store: KillmailStore,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self._now = now

    async def get_cursor(self, stream: str) -> Checkpoint | None:
        return await self.store.get_checkpoint(stream)

    async def advance_cursor(self, stream: str, new_id: int) -> bool:
        """
        Record ``new_id`` as the stream's high-water mark if it is higher.

        Returns:
            True if the cursor moved forward
        """
        moved = await self.store.advance_checkpoint(stream, new_id, self._now())
        if moved:
            logger.debug("Advanced cursor %s to %d", stream, new_id)
        return moved

    async def list_cursors(self) -> list[Checkpoint]:
        return await self.store.list_checkpoints()
