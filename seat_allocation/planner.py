from __future__ import annotations

from typing import Optional

from .models import CapacityMutation

INCLUDED_STATUSES = frozenset({"confirmed", "pending", "approved", "accepted"})


def counts_toward_capacity(status: Optional[str]) -> bool:
    # cancelled, declined, no_show and unknown statuses do not hold seats
    return bool(status) and status in INCLUDED_STATUSES


def clean_slot_key(slot_key: Optional[str]) -> Optional[str]:
    if not isinstance(slot_key, str):
        return None
    return slot_key.strip() or None


class _PlanBuilder:
    def __init__(self) -> None:
        self._totals: dict[str, int] = {}
        self._slots: dict[str, dict[str, int]] = {}

    def add(self, key: str, delta: int, slot_key: Optional[str]) -> None:
        if delta == 0:
            return
        self._totals[key] = self._totals.get(key, 0) + delta
        slots = self._slots.setdefault(key, {})
        slot = clean_slot_key(slot_key)
        if slot is not None:
            slots[slot] = slots.get(slot, 0) + delta

    def build(self) -> list[CapacityMutation]:
        out = []
        for key, total in self._totals.items():
            slots = self._slots.get(key) or {}
            if total == 0 and not slots:
                continue
            out.append(CapacityMutation(key=key, total_delta=total, slot_deltas=slots))
        return out


def compute_mutation_plan(
    old_key: str,
    new_key: str,
    old_count: int,
    new_count: int,
    old_included: bool,
    new_included: bool,
    old_slot_key: Optional[str] = None,
    new_slot_key: Optional[str] = None,
) -> list[CapacityMutation]:
    """
    Signed deltas that move a booking's headcount from its old (day, slot) to the new one.

    Every create/modify/cancel/status change reduces to this shape. The sum of total
    deltas always equals what the booking holds after minus what it held before.
    """
    plan = _PlanBuilder()
    if not old_included and not new_included:
        return []

    same_key = old_key == new_key
    if old_included and new_included and same_key:
        if clean_slot_key(old_slot_key) == clean_slot_key(new_slot_key):
            plan.add(new_key, new_count - old_count, new_slot_key if new_slot_key else old_slot_key)
        else:
            plan.add(old_key, -old_count, old_slot_key)
            plan.add(new_key, new_count, new_slot_key)
        return plan.build()

    if old_included:
        plan.add(old_key, -old_count, old_slot_key)
    if new_included:
        plan.add(new_key, new_count, new_slot_key)
    return plan.build()
