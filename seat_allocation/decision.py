from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable, Optional, Sequence

from .candidates import build_candidates
from .models import AllocationCandidate, AllocationDecision, AllocationMode, AllocationReason
from .ordering import SortKey, ZoneTiers, build_zone_tiers, candidate_sort_key, pick_best, zone_rank_map
from .schemas import SeatingSettings, Table, TableCombination, Zone

logger = logging.getLogger(__name__)


def _decision(
    settings: SeatingSettings,
    reason: AllocationReason,
    candidate: Optional[AllocationCandidate] = None,
) -> AllocationDecision:
    return AllocationDecision(
        zone_id=candidate.zone_id if candidate else None,
        table_ids=candidate.table_ids if candidate else (),
        reason=reason,
        allocation_mode=settings.allocation_mode,
        allocation_strategy=settings.allocation_strategy,
        snapshot=settings.snapshot(),
    )


def _first_zone_hit(
    zone_ids: Sequence[str], candidates: Sequence[AllocationCandidate], key: SortKey
) -> Optional[AllocationCandidate]:
    for zone_id in zone_ids:
        in_zone = [c for c in candidates if c.zone_id == zone_id]
        if in_zone:
            return pick_best(in_zone, key)
    return None


def _evaluate_tiers(
    tiers: ZoneTiers, candidates: Sequence[AllocationCandidate], key: SortKey
) -> Optional[tuple[AllocationReason, AllocationCandidate]]:
    for zone_ids, reason in (
        (tiers.primary, AllocationReason.zone_first),
        (tiers.fallback, AllocationReason.zone_overflow),
        (tiers.emergency, AllocationReason.emergency_zone),
    ):
        hit = _first_zone_hit(zone_ids, candidates, key)
        if hit is not None:
            return reason, hit
    return None


def _mode_agnostic(
    settings: SeatingSettings, tiers: ZoneTiers, candidates: Sequence[AllocationCandidate], key: SortKey
) -> tuple[AllocationReason, AllocationCandidate]:
    normal = [c for c in candidates if c.zone_id not in tiers.emergency_zone_ids]
    emergency = (
        [c for c in candidates if c.zone_id in tiers.emergency_zone_ids] if tiers.emergency_allowed else []
    )
    if normal:
        pool = normal
    elif emergency:
        return AllocationReason.emergency_zone, pick_best(emergency, key)
    else:
        # Nothing outside the emergency set and emergency not eligible today:
        # still seat the party somewhere physically possible.
        pool = list(candidates)
        logger.info("widening allocation to emergency zones outside their active rule")

    reason = AllocationReason.floorplan_fallback if settings.allocation_mode == AllocationMode.hybrid else AllocationReason.best_fit
    return reason, pick_best(pool, key)


def suggest_allocation_decision(
    party_size: int,
    booking_date: Optional[date],
    settings: SeatingSettings,
    zones: Sequence[Zone],
    tables: Iterable[Table],
    combinations: Iterable[TableCombination] = (),
) -> AllocationDecision:
    """
    Pick a zone and table(s) for a party.

    Pure: the same inputs always give the same decision. `tables` and `combinations`
    must already exclude anything occupied during the requested interval.

    Floorplan and hybrid modes walk zone tiers (primary, overflow, eligible emergency)
    and take the best candidate of the first zone that has one. Capacity mode, and
    hybrid once the tiers are exhausted, rank all candidates together.
    """
    if party_size <= 0:
        return _decision(settings, AllocationReason.invalid_party_size)

    candidates = build_candidates(party_size, settings, zones, tables, combinations)
    if not candidates:
        return _decision(settings, AllocationReason.no_fit)

    if isinstance(booking_date, datetime):
        booking_date = booking_date.date()

    ranks = zone_rank_map(zones, settings)
    tiers = build_zone_tiers(zones, settings, ranks, booking_date)
    key = candidate_sort_key(settings.allocation_strategy, ranks, party_size)

    mode = settings.allocation_mode
    if mode in (AllocationMode.floorplan, AllocationMode.hybrid):
        result = _evaluate_tiers(tiers, candidates, key)
        if result is not None:
            reason, best = result
            return _decision(settings, reason, best)
        if mode == AllocationMode.floorplan:
            return _decision(settings, AllocationReason.no_fit)

    reason, best = _mode_agnostic(settings, tiers, candidates, key)
    return _decision(settings, reason, best)


def decide_for_booking(
    party_size: int,
    booking_date: Optional[date],
    settings: SeatingSettings,
    zones: Sequence[Zone],
    tables: Iterable[Table],
    combinations: Iterable[TableCombination] = (),
) -> AllocationDecision:
    """Same as suggest_allocation_decision, but honours the allocationEnabled switch first."""
    if not settings.allocation_enabled:
        return _decision(settings, AllocationReason.allocation_disabled)
    return suggest_allocation_decision(party_size, booking_date, settings, zones, tables, combinations)
