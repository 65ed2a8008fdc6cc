"""
Pydantic models for zKillboard and ESI payloads.

Every payload is validated into one of these models at the client boundary, so
the pipeline never touches raw dicts. Validation failures surface as
PayloadValidationError (non-retryable).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...core.retry import PayloadValidationError
from ..killmail_store import Attacker, Victim

M = TypeVar("M", bound=BaseModel)


# =============================================================================
# Base Model
# =============================================================================


class FeedModel(BaseModel):
    """
    Base model for upstream payloads.

    Configuration:
    - frozen: Payloads are read-only once validated
    - extra="ignore": Upstream adds fields freely; unknown keys are dropped
    - populate_by_name: Allow snake_case construction in tests
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# zKillboard
# =============================================================================


class ZkbInfo(FeedModel):
    """zKillboard's metadata block for one kill."""

    hash: str = Field(min_length=1, description="Killmail hash required by ESI")
    total_value: float = Field(default=0.0, alias="totalValue")
    points: int = 0
    npc: Optional[bool] = None
    solo: Optional[bool] = None
    awox: bool = False
    labels: tuple[str, ...] = ()


class ZKillRecord(FeedModel):
    """
    One entry of a zKillboard response.

    Feed pages normally carry killmail_time; an entry whose time is missing or
    unparseable keeps killmail_time=None so the backfill driver can count it
    as invalid instead of failing the whole page.
    """

    killmail_id: int = Field(gt=0)
    killmail_time: Optional[datetime] = None
    zkb: Optional[ZkbInfo] = None

    @field_validator("killmail_time", mode="before")
    @classmethod
    def lenient_time(cls, v: Any) -> Any:
        if v is None or isinstance(v, datetime):
            return v
        if isinstance(v, str):
            try:
                return datetime.fromisoformat(v.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None

    @field_validator("killmail_time")
    @classmethod
    def utc_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v) if v is not None else None


# =============================================================================
# ESI
# =============================================================================


class EsiVictim(FeedModel):
    ship_type_id: int
    damage_taken: int = 0
    character_id: Optional[int] = None
    corporation_id: Optional[int] = None
    alliance_id: Optional[int] = None

    def to_victim(self) -> Victim:
        return Victim(
            ship_type_id=self.ship_type_id,
            damage_taken=self.damage_taken,
            character_id=self.character_id,
            corporation_id=self.corporation_id,
            alliance_id=self.alliance_id,
        )


class EsiAttacker(FeedModel):
    damage_done: int = 0
    final_blow: bool = False
    security_status: float = 0.0
    character_id: Optional[int] = None
    corporation_id: Optional[int] = None
    alliance_id: Optional[int] = None
    ship_type_id: Optional[int] = None
    weapon_type_id: Optional[int] = None

    def to_attacker(self) -> Attacker:
        return Attacker(
            damage_done=self.damage_done,
            final_blow=self.final_blow,
            security_status=self.security_status,
            character_id=self.character_id,
            corporation_id=self.corporation_id,
            alliance_id=self.alliance_id,
            ship_type_id=self.ship_type_id,
            weapon_type_id=self.weapon_type_id,
        )


class EsiKillmail(FeedModel):
    """Authoritative killmail detail from ESI."""

    killmail_id: int = Field(gt=0)
    killmail_time: datetime
    solar_system_id: int
    victim: EsiVictim
    attackers: tuple[EsiAttacker, ...] = ()

    @field_validator("killmail_time")
    @classmethod
    def utc_time(cls, v: datetime) -> datetime:
        return _ensure_utc(v)


# =============================================================================
# RedisQ
# =============================================================================


class RedisQPackage(FeedModel):
    """
    One kill pushed by RedisQ.

    Handles both package formats:
    - Current: {"killID": 123, "zkb": {...}}, optionally with the ESI killmail
    - Older: {"killmail": {"killmail_id": 123, ...}, "zkb": {...}}
    """

    kill_id: Optional[int] = Field(default=None, alias="killID")
    killmail: Optional[dict[str, Any]] = None
    zkb: Optional[ZkbInfo] = None

    @property
    def resolved_kill_id(self) -> Optional[int]:
        if self.kill_id is not None and self.kill_id > 0:
            return self.kill_id
        embedded = (self.killmail or {}).get("killmail_id")
        if isinstance(embedded, int) and embedded > 0:
            return embedded
        return None

    def embedded_killmail(self) -> Optional[EsiKillmail]:
        """The ESI killmail carried in the package, or None if absent or malformed."""
        if not self.killmail:
            return None
        try:
            return EsiKillmail.model_validate(self.killmail)
        except ValidationError:
            return None

    def to_record(self) -> ZKillRecord:
        """zKillboard summary equivalent, so ingestion can skip the /killID/ lookup."""
        kill_id = self.resolved_kill_id
        if kill_id is None:
            raise ValueError("RedisQ package has no killmail id")
        return ZKillRecord(
            killmail_id=kill_id,
            killmail_time=(self.killmail or {}).get("killmail_time"),
            zkb=self.zkb,
        )


# =============================================================================
# Validation Helper
# =============================================================================


def validate_payload(model: type[M], payload: Any, source: str) -> M:
    """
    Validate ``payload`` into ``model``.

    Args:
        model: Target model class
        payload: Decoded JSON
        source: Label used in the error message (e.g. "ESI killmail 123")

    Raises:
        PayloadValidationError: If the payload does not match the model
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {source}: {e.error_count()} validation error(s)",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ],
            original_error=e,
        ) from e
