"""
Diff-minimising child synchronisation.

Re-ingesting a kill must not rewrite rows that did not change. Given the
stored children of a kill and the freshly fetched ones, these functions plan
the smallest delete/create set that makes storage match the feed:

- Attackers are compared by position: after ordering both sides, index i of
  the stored list is kept iff it equals index i of the incoming list.
  Otherwise the stored row is deleted and the incoming one created in its
  place. Surplus stored rows are deleted, surplus incoming rows created.
- Involvements are compared by their "<character_id>-<role>" key.

Deletes must be applied before creates so freed positions can be reused.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from ..killmail_store import (
    ROLE_ATTACKER,
    ROLE_VICTIM,
    Attacker,
    Involvement,
    StoredAttacker,
    StoredInvolvement,
    Victim,
)

E = TypeVar("E")
I = TypeVar("I")  # noqa: E741


@dataclass
class SyncPlan(Generic[E, I]):
    """Rows to delete (stored side) and rows to create (incoming side)."""

    to_delete: list[E] = field(default_factory=list)
    to_create: list[I] = field(default_factory=list)
    unchanged_count: int = 0

    @property
    def is_noop(self) -> bool:
        return not self.to_delete and not self.to_create


def sync_children(
    existing: Sequence[E],
    incoming: Sequence[I],
    equals: Callable[[E, I], bool],
) -> SyncPlan[E, I]:
    """
    Plan a positional sync of ``existing`` to ``incoming``.

    Both sequences must already be in canonical order.

    Args:
        existing: Stored rows
        incoming: Desired rows
        equals: Whether a stored row already represents an incoming row

    Returns:
        SyncPlan whose deletes and creates, applied in that order, make the
        stored sequence equal the incoming one
    """
    plan: SyncPlan[E, I] = SyncPlan()
    common = min(len(existing), len(incoming))
    for stored, wanted in zip(existing[:common], incoming[:common]):
        if equals(stored, wanted):
            plan.unchanged_count += 1
        else:
            plan.to_delete.append(stored)
            plan.to_create.append(wanted)

    plan.to_delete.extend(existing[common:])
    plan.to_create.extend(incoming[common:])
    return plan


def sync_by_key(
    existing: Iterable[E],
    incoming: Iterable[I],
    existing_key: Callable[[E], Hashable],
    incoming_key: Callable[[I], Hashable],
) -> SyncPlan[E, I]:
    """
    Plan a set-style sync keyed by a composite key.

    Stored rows whose key is absent from ``incoming`` are deleted; incoming
    rows whose key is not stored are created. Duplicate incoming keys are
    created once.
    """
    incoming_by_key: dict[Hashable, I] = {}
    for item in incoming:
        incoming_by_key.setdefault(incoming_key(item), item)

    plan: SyncPlan[E, I] = SyncPlan()
    stored_keys: set[Hashable] = set()
    for row in existing:
        key = existing_key(row)
        if key in incoming_by_key and key not in stored_keys:
            plan.unchanged_count += 1
        else:
            plan.to_delete.append(row)
        stored_keys.add(key)

    plan.to_create = [item for key, item in incoming_by_key.items() if key not in stored_keys]
    return plan


# =============================================================================
# Killmail Specialisations
# =============================================================================


def plan_attacker_sync(
    stored: Iterable[StoredAttacker], incoming: Sequence[Attacker]
) -> SyncPlan[StoredAttacker, tuple[int, Attacker]]:
    """
    Plan the attacker rows for one kill.

    A stored row is kept only if it sits at the same position with identical
    fields. Created rows carry their incoming index as position.
    """
    ordered = sorted(stored, key=lambda row: (row.position, row.row_id))
    return sync_children(
        ordered,
        list(enumerate(incoming)),
        lambda row, pair: row.position == pair[0] and row.attacker == pair[1],
    )


def plan_involvement_sync(
    stored: Iterable[StoredInvolvement], incoming: Iterable[Involvement]
) -> SyncPlan[StoredInvolvement, Involvement]:
    return sync_by_key(stored, incoming, lambda row: row.key, lambda inv: inv.key)


def derive_involvements(
    victim: Victim, attackers: Iterable[Attacker], tracked_ids: set[int]
) -> list[Involvement]:
    """
    Roles of tracked characters on a kill, victim first then attackers in order.

    Characters appearing twice in the same role are listed once.
    """
    involvements: list[Involvement] = []
    seen: set[str] = set()

    def add(character_id: int | None, role: str) -> None:
        if character_id is None or character_id not in tracked_ids:
            return
        involvement = Involvement(character_id=character_id, role=role)  # type: ignore[arg-type]
        if involvement.key not in seen:
            seen.add(involvement.key)
            involvements.append(involvement)

    add(victim.character_id, ROLE_VICTIM)
    for attacker in attackers:
        add(attacker.character_id, ROLE_ATTACKER)
    return involvements
