from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Sequence

from .models import AllocationCandidate, AllocationStrategy, EmergencyRule
from .schemas import SeatingSettings, Zone

SortKey = Callable[[AllocationCandidate], tuple]


def js_weekday(d: date) -> int:
    """Weekday number with Sunday = 0, as stored in emergency zone rules."""
    return (d.weekday() + 1) % 7


def is_emergency_allowed(settings: SeatingSettings, booking_date: Optional[date]) -> bool:
    emergency = settings.emergency_zones
    if not emergency.enabled:
        return False
    if emergency.active_rule == EmergencyRule.by_weekday:
        if booking_date is None:
            return False
        return js_weekday(booking_date) in emergency.weekdays
    return True


def zone_rank_map(zones: Sequence[Zone], settings: SeatingSettings) -> dict[str, float]:
    ranks: dict[str, float] = {z.id: (z.priority if z.priority is not None else math.inf) for z in zones}
    for index, zone_id in enumerate(settings.zone_priority):
        ranks[zone_id] = index
    return ranks


def order_zone_ids(zones: Sequence[Zone], settings: SeatingSettings, ranks: dict[str, float]) -> list[str]:
    active = [z.id for z in zones if z.is_active]
    priority_order = settings.zone_priority
    if priority_order:
        active_set = set(active)
        listed = [zid for zid in priority_order if zid in active_set]
        listed_set = set(priority_order)
        return listed + [zid for zid in active if zid not in listed_set]

    default_zone = settings.default_zone_id
    # sorted() is stable, so equal ranks keep their input order.
    return sorted(active, key=lambda zid: (zid != default_zone, ranks.get(zid, math.inf)))


@dataclass(frozen=True)
class ZoneTiers:
    primary: tuple[str, ...]
    fallback: tuple[str, ...]
    emergency: tuple[str, ...]
    emergency_zone_ids: frozenset[str]
    emergency_allowed: bool


def build_zone_tiers(
    zones: Sequence[Zone],
    settings: SeatingSettings,
    ranks: dict[str, float],
    booking_date: Optional[date],
) -> ZoneTiers:
    ordered = order_zone_ids(zones, settings, ranks)
    active = {z.id for z in zones if z.is_active}
    emergency_ids = frozenset(zid for zid in settings.emergency_zones.zone_ids if zid in active)
    overflow = set(settings.overflow_zones)
    allowed = is_emergency_allowed(settings, booking_date)

    normal = [zid for zid in ordered if zid not in emergency_ids]
    return ZoneTiers(
        primary=tuple(zid for zid in normal if zid not in overflow),
        fallback=tuple(zid for zid in normal if zid in overflow),
        emergency=tuple(zid for zid in ordered if zid in emergency_ids) if allowed else (),
        emergency_zone_ids=emergency_ids,
        emergency_allowed=allowed,
    )


def candidate_sort_key(strategy: AllocationStrategy, ranks: dict[str, float], party_size: int) -> SortKey:
    if strategy == AllocationStrategy.priority_zone_first:
        def key(c: AllocationCandidate) -> tuple:
            return (ranks.get(c.zone_id, math.inf), c.slack(party_size), c.label)
    else:
        # bestFit and minWaste rank identically.
        def key(c: AllocationCandidate) -> tuple:
            return (c.slack(party_size), c.total_max, c.label)
    return key


def pick_best(candidates: Sequence[AllocationCandidate], key: SortKey) -> AllocationCandidate:
    return min(candidates, key=key)
