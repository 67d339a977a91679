from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from .models import AllocationDecision, AllocationReason

DEFAULT_ALGO_VERSION = "v1"


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


@dataclass(frozen=True)
class AllocationRecord:
    zone_id: Optional[str]
    table_ids: tuple[str, ...]
    trace_id: str
    decided_at_ms: int
    strategy: Optional[str]
    diagnostics_summary: str
    computed_for_start_time_ms: int
    computed_for_end_time_ms: int
    computed_for_headcount: int
    algo_version: str

    def to_dict(self) -> dict:
        d = asdict(self)
        d["table_ids"] = list(self.table_ids)
        return d


def build_allocation_record(
    decision: AllocationDecision,
    trace_id: str,
    decided_at: datetime,
    start_time: datetime,
    end_time: datetime,
    headcount: int,
    algo_version: str = DEFAULT_ALGO_VERSION,
) -> Optional[AllocationRecord]:
    """Summary stored on the booking; None when allocation was off or nothing was assigned."""
    if decision.reason == AllocationReason.allocation_disabled or not decision.assigned:
        return None
    if decision.allocation_strategy is not None:
        strategy = decision.allocation_strategy.value
    elif decision.allocation_mode is not None:
        strategy = decision.allocation_mode.value
    else:
        strategy = None
    return AllocationRecord(
        zone_id=decision.zone_id,
        table_ids=decision.table_ids,
        trace_id=trace_id,
        decided_at_ms=_ms(decided_at),
        strategy=strategy,
        diagnostics_summary=decision.reason.value,
        computed_for_start_time_ms=_ms(start_time),
        computed_for_end_time_ms=_ms(end_time),
        computed_for_headcount=headcount,
        algo_version=algo_version,
    )


def decision_event_id(
    unit_id: str,
    booking_id: str,
    start_time: datetime,
    end_time: datetime,
    party_size: int,
    decision: AllocationDecision,
    algo_version: str = DEFAULT_ALGO_VERSION,
) -> str:
    """Deterministic id for an audit entry, so a retried write is an upsert of the same event."""
    parts = [
        unit_id,
        booking_id,
        start_time.isoformat(),
        end_time.isoformat(),
        str(party_size),
        decision.allocation_mode.value if decision.allocation_mode else "",
        decision.allocation_strategy.value if decision.allocation_strategy else "",
        decision.reason.value,
        decision.zone_id or "",
        ",".join(decision.table_ids),
        algo_version,
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
