"""Headcount admission against a per-day capacity limit, bookable hours and manual overrides."""

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

from .ledger import to_date_key


class AdmissionStatus(str, Enum):
    accepted = "accepted"
    rejected = "rejected"
    needs_override = "needs_override"


class AdmissionReason(str, Enum):
    invalid_input = "INVALID_INPUT"
    outside_bookable_window = "OUTSIDE_BOOKABLE_WINDOW"
    capacity_full = "CAPACITY_FULL"
    capacity_available = "CAPACITY_AVAILABLE"
    override_accept = "OVERRIDE_ACCEPT"
    override_reject = "OVERRIDE_REJECT"


class RuleApplied(str, Enum):
    validation = "validation"
    hours = "hours"
    override = "override"
    auto = "auto"
    fallback = "fallback"


@dataclass(frozen=True)
class BookableWindow:
    start: str  # "HH:MM"
    end: str


@dataclass(frozen=True)
class AdmissionOverride:
    decision: str  # "accept" | "reject"
    reason: Optional[AdmissionReason] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class AdmissionDecision:
    status: AdmissionStatus
    reason: AdmissionReason
    capacity_key: str


@dataclass
class AdmissionResult:
    decision: AdmissionDecision
    audit_log: dict
    increment_total: int
    next_total: int


_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def time_minutes(value: object) -> Optional[int]:
    if not isinstance(value, str):
        return None
    m = _HHMM.match(value.strip())
    if not m:
        return None
    return int(m.group(1)) * 60 + int(m.group(2))


def within_bookable_window(start_time: datetime, window: Optional[BookableWindow]) -> bool:
    if window is None or not window.start or not window.end:
        return True
    start = time_minutes(window.start)
    end = time_minutes(window.end)
    if start is None or end is None:
        return True
    if start == end:
        return False
    minutes = start_time.hour * 60 + start_time.minute
    if start < end:
        return start <= minutes < end
    # window wraps past midnight
    return minutes >= start or minutes < end


def stable_trace_id(unit_id: str, date_key: str, start_iso: str, end_iso: str, party_size: float) -> str:
    payload = {
        "unitId": unit_id,
        "dateKey": date_key,
        "startTimeISO": start_iso,
        "endTimeISO": end_iso,
        "partySize": party_size,
    }
    raw = json.dumps(payload, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def override_from_doc(data: Optional[Mapping]) -> Optional[AdmissionOverride]:
    """Stored per-day override document -> override, or None when disabled/malformed."""
    if not data or data.get("enabled") is not True:
        return None
    decision = data.get("decision")
    if decision not in ("accept", "reject"):
        return None
    reason = data.get("reasonCode")
    return AdmissionOverride(
        decision=decision,
        reason=AdmissionReason(reason) if reason in {r.value for r in AdmissionReason} else None,
        source=data.get("source"),
    )


def decide_admission(
    unit_id: str,
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    party_size: float,
    current_count: int,
    limit: Optional[int] = None,
    date_key: Optional[str] = None,
    window: Optional[BookableWindow] = None,
    override: Optional[AdmissionOverride] = None,
    trace_id: Optional[str] = None,
) -> AdmissionResult:
    """
    Accept or reject a party against the day's headcount limit.

    Checks run in order: input validation, bookable hours, manual override, limit.
    Every path returns a result with an audit log body; nothing raises.
    """
    if not date_key and isinstance(start_time, datetime):
        date_key = to_date_key(start_time)
    date_key = date_key or ""
    start_iso = start_time.isoformat() if isinstance(start_time, datetime) else ""
    end_iso = end_time.isoformat() if isinstance(end_time, datetime) else ""
    trace_id = trace_id or stable_trace_id(unit_id, date_key, start_iso, end_iso, party_size)

    def result(status, reason, rule, ovr: Optional[AdmissionOverride] = None) -> AdmissionResult:
        accepted = status == AdmissionStatus.accepted
        next_total = current_count + party_size if accepted else current_count
        audit = {
            "unitId": unit_id,
            "dateKey": date_key,
            "traceId": trace_id,
            "reservationId": None,
            "inputSummary": {"startTimeISO": start_iso, "endTimeISO": end_iso, "partySize": party_size},
            "ruleApplied": rule.value,
            "outcome": {"status": status.value, "reasonCode": reason.value},
            "capacityBefore": {"currentCount": current_count, "limit": limit},
            "overrideUsed": ovr is not None,
            "overrideSource": ovr.source if ovr else None,
        }
        if accepted:
            audit["capacityAfter"] = {"totalCount": next_total}
        return AdmissionResult(
            decision=AdmissionDecision(status=status, reason=reason, capacity_key=date_key),
            audit_log=audit,
            increment_total=party_size if accepted else 0,
            next_total=next_total,
        )

    rejected = AdmissionStatus.rejected
    valid_size = isinstance(party_size, (int, float)) and not isinstance(party_size, bool) and math.isfinite(party_size)
    if not unit_id or not date_key or not valid_size:
        return result(rejected, AdmissionReason.invalid_input, RuleApplied.validation)
    if not isinstance(start_time, datetime) or not isinstance(end_time, datetime) or end_time <= start_time:
        return result(rejected, AdmissionReason.invalid_input, RuleApplied.validation)
    if party_size <= 0:
        return result(rejected, AdmissionReason.invalid_input, RuleApplied.validation)
    if not within_bookable_window(start_time, window):
        return result(rejected, AdmissionReason.outside_bookable_window, RuleApplied.hours)

    if override is not None and override.decision == "accept":
        return result(
            AdmissionStatus.accepted, override.reason or AdmissionReason.override_accept, RuleApplied.override, override
        )
    if override is not None and override.decision == "reject":
        return result(rejected, override.reason or AdmissionReason.override_reject, RuleApplied.override, override)

    if limit is not None and current_count + party_size > limit:
        return result(rejected, AdmissionReason.capacity_full, RuleApplied.auto)
    return result(AdmissionStatus.accepted, AdmissionReason.capacity_available, RuleApplied.auto)
