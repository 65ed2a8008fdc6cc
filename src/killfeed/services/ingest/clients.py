"""
zKillboard and ESI clients.

Thin typed wrappers over ResilientAsyncClient: they build request paths,
validate payloads into models and translate "not found" into None. Rate
limiting, retries and circuit breaking happen in the shared HTTP layer.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Literal

from pydantic import ValidationError

from ...core.async_client import ResilientAsyncClient
from ...core.cancellation import CancelToken
from ...core.logging import get_logger
from ...core.retry import PayloadValidationError
from .models import EsiKillmail, ZKillRecord, validate_payload

logger = get_logger(__name__)

FeedKind = Literal["kills", "losses"]
FEED_KINDS: tuple[FeedKind, ...] = ("kills", "losses")


class ZKillboardClient:
    """
    Client for zKillboard's character feeds and kill summaries.

    Args:
        http: Resilient client bound to the zKillboard base URL
    """

    def __init__(self, http: ResilientAsyncClient):
        self.http = http

    async def get_character_page(
        self,
        entity_id: int,
        page: int,
        kind: FeedKind = "kills",
        token: CancelToken | None = None,
    ) -> list[ZKillRecord]:
        """
        Fetch one page of a character's kill or loss feed, newest first.

        Entries that fail validation (e.g. no killmail_id) are dropped with a
        warning; entries with an unparseable time are kept with
        killmail_time=None.

        Raises:
            PayloadValidationError: If the page is not a JSON list
        """
        if kind not in FEED_KINDS:
            raise ValueError(f"Unknown feed kind: {kind}")

        path = f"/{kind}/characterID/{entity_id}/page/{page}/"
        payload = await self.http.get_json(path, token)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise PayloadValidationError(f"zKillboard {kind} page {page} is not a list")

        records: list[ZKillRecord] = []
        for raw in payload:
            try:
                records.append(ZKillRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "Dropping invalid zKillboard entry on %s page %d: %s",
                    kind,
                    page,
                    e.errors()[0]["msg"] if e.errors() else e,
                )
        return records

    async def get_killmail_summary(
        self, kill_id: int, token: CancelToken | None = None
    ) -> ZKillRecord | None:
        """
        Fetch zKillboard's summary (hash, value, flags) for one kill.

        Returns:
            The record, or None if zKillboard does not know the kill

        Raises:
            PayloadValidationError: If the response does not match the schema
        """
        payload = await self.http.get_json_safe(f"/killID/{kill_id}/", token)
        if not payload:
            return None
        if isinstance(payload, list):
            payload = payload[0]
        return validate_payload(ZKillRecord, payload, f"zKillboard summary {kill_id}")


class ESIKillmailClient:
    """
    Client for ESI's authoritative killmail endpoint.

    Killmails are immutable, so validated payloads are cached by
    (kill_id, hash) for ``cache_ttl`` seconds. The cache is bounded to
    ``cache_size`` entries, evicting the oldest first.

    Args:
        http: Resilient client bound to the ESI base URL
        cache_ttl: Lifetime of a cached killmail in seconds (0 disables caching)
        cache_size: Maximum cached killmails
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        http: ResilientAsyncClient,
        cache_ttl: float = 300.0,
        cache_size: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http
        self.cache_ttl = cache_ttl
        self.cache_size = cache_size
        self._clock = clock
        self._cache: OrderedDict[tuple[int, str], tuple[float, EsiKillmail]] = OrderedDict()
        self.cache_hits = 0
        self.cache_misses = 0

    async def get_killmail(
        self,
        kill_id: int,
        killmail_hash: str,
        token: CancelToken | None = None,
        *,
        use_cache: bool = True,
    ) -> EsiKillmail | None:
        """
        Fetch a killmail's full detail.

        Args:
            kill_id: Killmail ID
            killmail_hash: Hash from zKillboard
            token: Optional cancellation token
            use_cache: False to skip the cache lookup (the fresh result is still cached)

        Returns:
            The killmail, or None if ESI returns 404

        Raises:
            PayloadValidationError: If the payload does not match the schema
        """
        key = (kill_id, killmail_hash)
        if use_cache:
            cached = self._cache_get(key)
            if cached is not None:
                self.cache_hits += 1
                return cached
        self.cache_misses += 1

        payload = await self.http.get_json_safe(
            f"/killmails/{kill_id}/{killmail_hash}/",
            token,
            params={"datasource": "tranquility"},
        )
        if payload is None:
            return None

        killmail = validate_payload(EsiKillmail, payload, f"ESI killmail {kill_id}")
        self._cache_put(key, killmail)
        return killmail

    def _cache_get(self, key: tuple[int, str]) -> EsiKillmail | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, killmail = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        return killmail

    def _cache_put(self, key: tuple[int, str], killmail: EsiKillmail) -> None:
        if self.cache_ttl <= 0:
            return
        self._cache[key] = (self._clock() + self.cache_ttl, killmail)
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, int]:
        return {
            "entries": len(self._cache),
            "hits": self.cache_hits,
            "misses": self.cache_misses,
        }
