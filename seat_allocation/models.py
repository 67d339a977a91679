from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class AllocationError(Exception):
    pass


class InvalidInputError(AllocationError):
    """Request is malformed (missing unit/date, bad party size); never retried."""


class AllocationMode(str, Enum):
    capacity = "capacity"
    floorplan = "floorplan"
    hybrid = "hybrid"


class AllocationStrategy(str, Enum):
    best_fit = "bestFit"
    min_waste = "minWaste"
    priority_zone_first = "priorityZoneFirst"


class EmergencyRule(str, Enum):
    always = "always"
    by_weekday = "byWeekday"


class ZoneType(str, Enum):
    bar = "bar"
    outdoor = "outdoor"
    table = "table"
    other = "other"


class AllocationReason(str, Enum):
    invalid_party_size = "INVALID_PARTY_SIZE"
    no_fit = "NO_FIT"
    zone_first = "ZONE_FIRST"
    zone_overflow = "ZONE_OVERFLOW"
    emergency_zone = "EMERGENCY_ZONE"
    floorplan_fallback = "FLOORPLAN_FALLBACK"
    best_fit = "BEST_FIT"
    allocation_disabled = "ALLOCATION_DISABLED"


@dataclass(frozen=True)
class AllocationCandidate:
    zone_id: str
    table_ids: tuple[str, ...]
    total_min: int
    total_max: int
    label: str

    def slack(self, party_size: int) -> int:
        return self.total_max - party_size


@dataclass(frozen=True)
class AllocationSnapshot:
    overflow_zones_count: int = 0
    zone_priority_count: int = 0
    emergency_zones_count: int = 0

    def to_dict(self) -> dict:
        return {
            "overflowZonesCount": self.overflow_zones_count,
            "zonePriorityCount": self.zone_priority_count,
            "emergencyZonesCount": self.emergency_zones_count,
        }


@dataclass(frozen=True)
class AllocationDecision:
    zone_id: Optional[str]
    table_ids: tuple[str, ...]
    reason: AllocationReason
    allocation_mode: Optional[AllocationMode] = None
    allocation_strategy: Optional[AllocationStrategy] = None
    snapshot: AllocationSnapshot = field(default_factory=AllocationSnapshot)

    @property
    def assigned(self) -> bool:
        return self.zone_id is not None and bool(self.table_ids)

    def to_dict(self) -> dict:
        return {
            "zoneId": self.zone_id,
            "tableIds": list(self.table_ids),
            "reason": self.reason.value,
            "allocationMode": self.allocation_mode.value if self.allocation_mode else None,
            "allocationStrategy": self.allocation_strategy.value if self.allocation_strategy else None,
            "snapshot": self.snapshot.to_dict(),
        }


@dataclass(frozen=True)
class CapacityMutation:
    key: str
    total_delta: int
    slot_deltas: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out: dict = {"key": self.key, "totalDelta": self.total_delta}
        if self.slot_deltas:
            out["slotDeltas"] = dict(self.slot_deltas)
        return out
