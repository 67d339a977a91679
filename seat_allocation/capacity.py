from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .models import CapacityMutation


class CapacityInvariantReason(str, Enum):
    missing_counts = "missing-counts"
    count_mismatch = "count-mismatch"
    total_count_invalid = "totalCount-invalid"
    by_time_slot_invalid = "byTimeSlot-invalid"
    by_time_slot_sum_mismatch = "byTimeSlot-sum-mismatch"
    by_time_slot_removed_zero = "byTimeSlot-removed-zero"


INVALID_DOC = "invalid-doc"


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _is_finite(v: Any) -> bool:
    return _is_number(v) and math.isfinite(v)


def _valid_slots(value: Any) -> Optional[dict[str, float]]:
    """The slot map if every entry is a finite non-negative number, else None."""
    if not isinstance(value, Mapping) or not value:
        return None
    if not all(_is_finite(v) and v >= 0 for v in value.values()):
        return None
    return {str(k): v for k, v in value.items()}


def read_capacity_total(raw: Any) -> float:
    """Stored headcount, preferring totalCount over the legacy count mirror."""
    if not isinstance(raw, Mapping):
        return 0
    for name in ("totalCount", "count"):
        if _is_finite(raw.get(name)):
            return raw[name]
    return 0


@dataclass(frozen=True)
class WriteNormalization:
    payload: dict
    deletes_by_time_slot: bool
    reasons: tuple[CapacityInvariantReason, ...] = ()


def normalize_for_write(raw: Any) -> WriteNormalization:
    """
    Canonical form of a stored capacity document plus the reasons it had to change.

    Used right before the ledger writes a document, so that corrupt history is
    repaired instead of blocking the mutation.
    """
    record: Mapping = raw if isinstance(raw, Mapping) else {}
    reasons: list[CapacityInvariantReason] = []

    total = read_capacity_total(record)
    raw_total = record.get("totalCount")
    if total < 0 or ("totalCount" in record and not _is_finite(raw_total)):
        reasons.append(CapacityInvariantReason.total_count_invalid)
        total = max(0, total)
    raw_count = record.get("count")
    if not _is_number(raw_count) or raw_count != total:
        reasons.append(CapacityInvariantReason.count_mismatch)

    has_slots = "byTimeSlot" in record
    slots: Optional[dict[str, float]] = None
    if has_slots:
        if total == 0:
            reasons.append(CapacityInvariantReason.by_time_slot_removed_zero)
        else:
            candidate = _valid_slots(record["byTimeSlot"])
            if candidate is None:
                reasons.append(CapacityInvariantReason.by_time_slot_invalid)
            elif sum(candidate.values()) != total:
                reasons.append(CapacityInvariantReason.by_time_slot_sum_mismatch)
            else:
                slots = candidate

    payload: dict = {"totalCount": total, "count": total}
    if slots:
        payload["byTimeSlot"] = slots
    return WriteNormalization(payload=payload, deletes_by_time_slot=has_slots and not slots, reasons=tuple(reasons))


def normalize_capacity_doc(raw: Any) -> dict:
    """
    Trusted shape of a capacity document: {totalCount, count[, byTimeSlot]}.

    The slot breakdown survives only when it is entirely valid and sums to the total;
    it is never partially repaired. normalize(normalize(x)) == normalize(x).
    """
    return normalize_for_write(raw).payload


def apply_capacity_delta(prev: Mapping, mutation: CapacityMutation) -> dict:
    """Apply a signed mutation to an already normalized document. Totals clamp at zero."""
    prev_total = read_capacity_total(prev)
    next_total = max(0, prev_total + mutation.total_delta)
    if next_total == 0:
        return {"totalCount": 0, "count": 0}

    prev_slots = prev.get("byTimeSlot")
    if isinstance(prev_slots, Mapping):
        slots: Optional[dict] = dict(prev_slots)
    elif prev_total == 0:
        # an empty day has an empty (not unknown) breakdown
        slots = {}
    else:
        slots = None

    if slots is not None:
        for slot_key, delta in mutation.slot_deltas.items():
            if not _is_finite(delta) or delta == 0:
                continue
            value = slots.get(slot_key, 0) + delta
            if value <= 0:
                slots.pop(slot_key, None)
            else:
                slots[slot_key] = value
        if not slots or sum(slots.values()) != next_total:
            slots = None

    out: dict = {"totalCount": next_total, "count": next_total}
    if slots:
        out["byTimeSlot"] = slots
    return out


@dataclass
class ScanResult:
    anomalies: list[str] = field(default_factory=list)
    total_count: Optional[float] = None
    count: Optional[float] = None
    by_time_slot_sum: Optional[float] = None

    @property
    def ok(self) -> bool:
        return not self.anomalies


def detect_capacity_anomalies(raw: Any) -> ScanResult:
    """Read-only audit of a stored capacity document. Flags may co-occur."""
    if not isinstance(raw, Mapping):
        return ScanResult(anomalies=[INVALID_DOC])

    R = CapacityInvariantReason
    res = ScanResult()
    has_total = "totalCount" in raw
    has_count = "count" in raw
    total = raw.get("totalCount") if _is_finite(raw.get("totalCount")) else None
    count = raw.get("count") if _is_finite(raw.get("count")) else None
    res.total_count = total
    res.count = count

    if not has_total and not has_count:
        res.anomalies.append(R.missing_counts.value)
    if has_total and (total is None or total < 0):
        res.anomalies.append(R.total_count_invalid.value)
    if total is not None and count is not None and total != count:
        res.anomalies.append(R.count_mismatch.value)

    if "byTimeSlot" in raw:
        slots = raw["byTimeSlot"]
        if not isinstance(slots, Mapping):
            res.anomalies.append(R.by_time_slot_invalid.value)
            return res
        valid = [v for v in slots.values() if _is_finite(v) and v >= 0]
        res.by_time_slot_sum = sum(valid)
        if len(valid) != len(slots):
            res.anomalies.append(R.by_time_slot_invalid.value)
        elif total is not None and res.by_time_slot_sum != total:
            res.anomalies.append(R.by_time_slot_sum_mismatch.value)
    return res


@dataclass(frozen=True)
class CleanupWrite:
    payload: dict
    deletes_by_time_slot: bool


def build_cleanup_write(raw: Any) -> Optional[CleanupWrite]:
    """Corrective write for a stored document, or None when it is already canonical."""
    normalized = normalize_capacity_doc(raw)
    record: Mapping = raw if isinstance(raw, Mapping) else {}
    total = normalized["totalCount"]
    raw_total = record.get("totalCount") if _is_number(record.get("totalCount")) else None
    raw_count = record.get("count") if _is_number(record.get("count")) else None
    raw_slots = record.get("byTimeSlot")
    had_slots = raw_slots is not None

    needs_update = (
        raw_total != total
        or raw_count != total
        or (raw_slots if had_slots else None) != normalized.get("byTimeSlot")
    )
    if not needs_update:
        return None
    return CleanupWrite(
        payload=dict(normalized),
        deletes_by_time_slot=had_slots and "byTimeSlot" not in normalized,
    )
