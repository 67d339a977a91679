from __future__ import annotations

from typing import Iterable, Optional

from .models import AllocationCandidate
from .schemas import SeatingSettings, Table, TableCombination, Zone


def can_seat_solo(table: Table, settings: SeatingSettings) -> bool:
    return table.can_seat_solo is True or table.id in settings.solo_allowed_table_ids


def _zone_of(table: Table) -> Optional[str]:
    z = (table.zone_id or "").strip()
    return z or None


def _single_candidate(
    table: Table, party_size: int, settings: SeatingSettings, active_zone_ids: set[str]
) -> Optional[AllocationCandidate]:
    solo_ok = party_size == 1 and can_seat_solo(table, settings)
    if not solo_ok and party_size < table.min_seats:
        return None
    if party_size > table.max_seats:
        return None
    if not table.zone_id or table.zone_id not in active_zone_ids:
        return None
    return AllocationCandidate(
        zone_id=table.zone_id,
        table_ids=(table.id,),
        total_min=table.min_seats,
        total_max=table.max_seats,
        label=table.id,
    )


def _combination_candidate(
    combo: TableCombination,
    party_size: int,
    settings: SeatingSettings,
    tables_by_id: dict[str, Table],
    active_zone_ids: set[str],
) -> Optional[AllocationCandidate]:
    members = [tables_by_id.get(tid) for tid in combo.table_ids]
    if not members or any(t is None for t in members):
        return None

    zone_ids = {z for z in (_zone_of(t) for t in members) if z}
    if not zone_ids:
        return None
    if len(zone_ids) > 1:
        if not settings.allow_cross_zone_combinations:
            return None
        if not zone_ids <= active_zone_ids:
            return None

    anchor_zone = _zone_of(members[0])
    if anchor_zone is None or anchor_zone not in active_zone_ids:
        return None

    total_min = sum(t.min_seats for t in members)
    total_max = sum(t.max_seats for t in members)
    if party_size < total_min or party_size > total_max:
        return None
    return AllocationCandidate(
        zone_id=anchor_zone,
        table_ids=tuple(combo.table_ids),
        total_min=total_min,
        total_max=total_max,
        label=",".join(combo.table_ids),
    )


def build_candidates(
    party_size: int,
    settings: SeatingSettings,
    zones: Iterable[Zone],
    tables: Iterable[Table],
    combinations: Iterable[TableCombination] = (),
) -> list[AllocationCandidate]:
    """
    Enumerate every single table and table combination that can physically seat the party.

    `tables` and `combinations` are expected to be pre-filtered for availability in the
    requested interval; inactive entries are still dropped here.
    """
    active_zone_ids = {z.id for z in zones if z.is_active}
    active_tables = [t for t in tables if t.is_active]
    tables_by_id = {t.id: t for t in active_tables}

    out: list[AllocationCandidate] = []
    for table in active_tables:
        cand = _single_candidate(table, party_size, settings, active_zone_ids)
        if cand is not None:
            out.append(cand)

    max_combine = settings.max_combine_count
    if max_combine >= 2:
        for combo in combinations:
            if not combo.is_active or len(combo.table_ids) > max_combine:
                continue
            cand = _combination_candidate(combo, party_size, settings, tables_by_id, active_zone_ids)
            if cand is not None:
                out.append(cand)
    return out
