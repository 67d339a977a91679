from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Hashable, Iterable, Mapping, Optional, Protocol

from .capacity import CapacityInvariantReason, apply_capacity_delta, normalize_capacity_doc, normalize_for_write
from .models import CapacityMutation
from .planner import clean_slot_key, compute_mutation_plan, counts_toward_capacity

logger = logging.getLogger(__name__)


def to_date_key(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def _parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class LedgerState:
    """What a booking last actually contributed to the capacity aggregate."""

    applied: bool = False
    key: Optional[str] = None
    count: Optional[int] = None
    slot_key: Optional[str] = None
    applied_at: Optional[datetime] = None
    last_mutation_trace_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "LedgerState":
        data = data or {}
        count = data.get("count")
        return cls(
            applied=data.get("applied") is True,
            key=data.get("key") if isinstance(data.get("key"), str) else None,
            count=count if isinstance(count, (int, float)) and not isinstance(count, bool) else None,
            slot_key=clean_slot_key(data.get("slotKey")),
            applied_at=_parse_dt(data.get("appliedAt")),
            last_mutation_trace_id=data.get("lastMutationTraceId") or None,
        )

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "key": self.key,
            "count": self.count,
            "slotKey": self.slot_key,
            "appliedAt": self.applied_at.isoformat() if self.applied_at else None,
            "lastMutationTraceId": self.last_mutation_trace_id,
        }


class WarnOnceCache:
    """
    Bounded set of recently seen keys with a time-to-live.

    Used to rate-limit repetitive log lines; inject a fresh instance (or a fake clock)
    to reset it.
    """

    def __init__(self, maxsize: int = 1024, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[Hashable, float] = OrderedDict()

    def first_time(self, key: Hashable) -> bool:
        """True (and remembers the key) unless the key was seen within the TTL."""
        now = self._clock()
        seen_at = self._seen.get(key)
        if seen_at is not None and now - seen_at < self.ttl_seconds:
            return False
        self._seen[key] = now
        self._seen.move_to_end(key)
        while len(self._seen) > self.maxsize:
            self._seen.popitem(last=False)
        return True

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


class LedgerTransaction(Protocol):
    """Reads and writes staged inside one atomic read-modify-write transaction."""

    def get_booking(self, unit_id: str, booking_id: str) -> Mapping: ...

    def get_capacity(self, unit_id: str, date_key: str) -> Optional[Mapping]: ...

    def set_capacity(self, unit_id: str, date_key: str, doc: dict) -> None: ...

    def update_ledger(self, unit_id: str, booking_id: str, ledger: dict) -> None: ...


@dataclass
class LedgerOutcome:
    replayed: bool
    ledger: LedgerState
    applied: list[CapacityMutation] = field(default_factory=list)
    skipped_keys: list[str] = field(default_factory=list)


def resolve_ledger_current_key(
    ledger_key: Optional[str], start_time: Optional[datetime], next_date_key: str
) -> str:
    if ledger_key:
        return ledger_key
    if isinstance(start_time, datetime):
        return to_date_key(start_time)
    return next_date_key


def is_ledger_replay(ledger: LedgerState, desired: LedgerState, mutation_trace_id: Optional[str]) -> bool:
    if not mutation_trace_id or ledger.last_mutation_trace_id != mutation_trace_id:
        return False
    return (ledger.applied, ledger.key, ledger.count) == (desired.applied, desired.key, desired.count)


def should_skip_capacity_mutation(mutation_trace_id: Optional[str], capacity_trace_id: Optional[str]) -> bool:
    return bool(mutation_trace_id) and mutation_trace_id == capacity_trace_id


class CapacityLedgerService:
    """
    Applies booking state transitions to the per-day capacity documents.

    The plan is always a diff between the booking's embedded ledger (what was last
    applied) and the desired state, so retrying with the same trace id is safe even
    after a partially applied attempt.
    """

    def __init__(self, warn_cache: Optional[WarnOnceCache] = None, now: Optional[Callable[[], datetime]] = None):
        self.warn_cache = warn_cache if warn_cache is not None else WarnOnceCache()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def should_warn_invariant(
        self,
        reasons: Iterable[CapacityInvariantReason],
        prev_had_slots: bool,
        unit_id: str,
        date_key: str,
        mutation_trace_id: Optional[str] = None,
    ) -> bool:
        reasons = list(reasons)
        if not reasons:
            return False
        severe = CapacityInvariantReason.total_count_invalid in reasons
        if not prev_had_slots and not severe:
            return False
        return self.warn_cache.first_time(("invariant", unit_id, date_key, mutation_trace_id or ""))

    def apply(
        self,
        tx: LedgerTransaction,
        unit_id: str,
        booking_id: str,
        next_status: Optional[str],
        next_date_key: str,
        next_headcount: int,
        next_slot_key: Optional[str] = None,
        mutation_trace_id: Optional[str] = None,
        booking: Optional[Mapping] = None,
    ) -> LedgerOutcome:
        if booking is None:
            booking = tx.get_booking(unit_id, booking_id) or {}
        ledger = LedgerState.from_dict(booking.get("capacityLedger"))

        current_key = resolve_ledger_current_key(ledger.key, _parse_dt(booking.get("startTime")), next_date_key)
        headcount = booking.get("headcount")
        if ledger.count is not None:
            current_count = ledger.count
        elif isinstance(headcount, int) and not isinstance(headcount, bool):
            current_count = headcount
        else:
            current_count = 0
        current_slot = ledger.slot_key if ledger.applied and ledger.slot_key else clean_slot_key(booking.get("timeSlot"))

        included = counts_toward_capacity(next_status)
        if included and not ledger.applied:
            applied_at = self._now()
        elif included:
            applied_at = ledger.applied_at or self._now()
        else:
            applied_at = None
        desired = LedgerState(
            applied=included,
            key=next_date_key if included else None,
            count=next_headcount if included else None,
            slot_key=clean_slot_key(next_slot_key) if included else None,
            applied_at=applied_at,
            last_mutation_trace_id=mutation_trace_id or ledger.last_mutation_trace_id,
        )

        if is_ledger_replay(ledger, desired, mutation_trace_id):
            if self.warn_cache.first_time(("replay", unit_id, booking_id, mutation_trace_id)):
                logger.info(
                    "capacity ledger replay skipped unit=%s booking=%s trace=%s", unit_id, booking_id, mutation_trace_id
                )
            return LedgerOutcome(replayed=True, ledger=ledger)

        plan = compute_mutation_plan(
            old_key=current_key,
            new_key=next_date_key,
            old_count=current_count,
            new_count=next_headcount,
            old_included=ledger.applied,
            new_included=included,
            old_slot_key=current_slot,
            new_slot_key=next_slot_key,
        )

        outcome = LedgerOutcome(replayed=False, ledger=desired)
        for mutation in plan:
            raw = tx.get_capacity(unit_id, mutation.key)
            if raw is not None and should_skip_capacity_mutation(mutation_trace_id, raw.get("lastMutationTraceId")):
                outcome.skipped_keys.append(mutation.key)
                continue
            self._write_mutation(tx, unit_id, mutation, raw, mutation_trace_id)
            outcome.applied.append(mutation)

        tx.update_ledger(unit_id, booking_id, desired.to_dict())
        return outcome

    def _write_mutation(
        self,
        tx: LedgerTransaction,
        unit_id: str,
        mutation: CapacityMutation,
        raw: Optional[Mapping],
        mutation_trace_id: Optional[str],
    ) -> None:
        prev_had_slots = bool(raw) and raw.get("byTimeSlot") is not None
        normalized = normalize_for_write(raw)
        if self.should_warn_invariant(normalized.reasons, prev_had_slots, unit_id, mutation.key, mutation_trace_id):
            logger.warning(
                "capacity invariant repaired unit=%s date=%s reasons=%s",
                unit_id,
                mutation.key,
                ",".join(r.value for r in normalized.reasons),
            )
        doc = normalize_capacity_doc(apply_capacity_delta(normalized.payload, mutation))
        doc["lastMutationTraceId"] = mutation_trace_id
        tx.set_capacity(unit_id, mutation.key, doc)
