"""SQL adapters for the allocation engine and the capacity ledger."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import update
from sqlmodel import Session, select

from seat_allocation.models import AllocationError
from seat_allocation.schemas import SeatingSettings, Table, TableCombination, Zone
from seat_allocation.storage import Floorplan

from .db import TransactionConflict
from .models import (
    Booking,
    CapacityDocument,
    SeatingSettingsDoc,
    TableCombinationDoc,
    TableDoc,
    ZoneDoc,
    _utc_now,
)

CANCELLED = "cancelled"
LOOKBACK = timedelta(hours=48)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class SqlLedgerTransaction:
    """
    LedgerTransaction over one SQLModel session.

    Every row read remembers its version; writes are conditional on that version
    and raise TransactionConflict when another writer got there first, so the
    caller (with_transaction) can re-run the whole read-modify-write.
    """

    def __init__(self, session: Session):
        self.session = session
        self._capacity_versions: dict[tuple[str, str], Optional[int]] = {}
        self._booking_versions: dict[tuple[str, str], int] = {}
        self._staged: dict[tuple[str, str], dict] = {}

    def get_booking(self, unit_id: str, booking_id: str) -> dict:
        row = self.session.get(Booking, (unit_id, booking_id))
        if row is None:
            return {}
        self._booking_versions.setdefault((unit_id, booking_id), row.version)
        return {
            "status": row.status,
            "headcount": row.headcount,
            "startTime": row.start_time,
            "endTime": row.end_time,
            "timeSlot": row.time_slot,
            "capacityLedger": row.capacity_ledger(),
        }

    def get_capacity(self, unit_id: str, date_key: str) -> Optional[dict]:
        key = (unit_id, date_key)
        if key in self._staged:
            return dict(self._staged[key])
        row = self.session.get(CapacityDocument, key)
        self._capacity_versions[key] = row.version if row is not None else None
        return row.doc() if row is not None else None

    def set_capacity(self, unit_id: str, date_key: str, doc: dict) -> None:
        key = (unit_id, date_key)
        if key not in self._capacity_versions:
            self.get_capacity(unit_id, date_key)
        version = self._capacity_versions[key]
        payload = _dumps(doc)
        if version is None:
            # A concurrent insert surfaces as IntegrityError on flush.
            self.session.add(CapacityDocument(unit_id=unit_id, date_key=date_key, doc_json=payload, version=1))
            self.session.flush()
            self._capacity_versions[key] = 1
        else:
            stmt = (
                update(CapacityDocument)
                .where(
                    CapacityDocument.unit_id == unit_id,
                    CapacityDocument.date_key == date_key,
                    CapacityDocument.version == version,
                )
                .values(doc_json=payload, version=version + 1, updated_at=_utc_now())
            )
            if self.session.connection().execute(stmt).rowcount != 1:
                raise TransactionConflict(f"capacity {unit_id}/{date_key} changed concurrently")
            self._capacity_versions[key] = version + 1
        self._staged[key] = dict(doc)

    def update_ledger(self, unit_id: str, booking_id: str, ledger: dict) -> None:
        self.update_booking(unit_id, booking_id, capacity_ledger_json=_dumps(ledger))

    def update_booking(self, unit_id: str, booking_id: str, **values: Any) -> None:
        key = (unit_id, booking_id)
        if key not in self._booking_versions and not self.get_booking(unit_id, booking_id):
            raise AllocationError(f"booking not found: {unit_id}/{booking_id}")
        version = self._booking_versions[key]
        stmt = (
            update(Booking)
            .where(Booking.unit_id == unit_id, Booking.id == booking_id, Booking.version == version)
            .values(version=version + 1, updated_at=_utc_now(), **values)
        )
        if self.session.connection().execute(stmt).rowcount != 1:
            raise TransactionConflict(f"booking {unit_id}/{booking_id} changed concurrently")
        self._booking_versions[key] = version + 1


def fetch_seating_settings(session: Session, unit_id: str) -> SeatingSettings:
    row = session.get(SeatingSettingsDoc, unit_id)
    return SeatingSettings.from_doc(json.loads(row.settings_json) if row is not None else None)


def fetch_floorplan(session: Session, unit_id: str) -> Floorplan:
    """Settings plus the active zones, tables and combinations of one unit."""
    zones = [Zone.from_doc(json.loads(r.doc_json), r.id) for r in session.exec(select(ZoneDoc).where(ZoneDoc.unit_id == unit_id))]
    tables = [
        Table.from_doc(json.loads(r.doc_json), r.id) for r in session.exec(select(TableDoc).where(TableDoc.unit_id == unit_id))
    ]
    combos = [
        TableCombination.from_doc(json.loads(r.doc_json), r.id)
        for r in session.exec(select(TableCombinationDoc).where(TableCombinationDoc.unit_id == unit_id))
    ]
    return Floorplan(
        settings=fetch_seating_settings(session, unit_id),
        zones=[z for z in zones if z.is_active],
        tables=[t for t in tables if t.is_active],
        combinations=[c for c in combos if c is not None and c.is_active],
    )


def save_floorplan(session: Session, unit_id: str, floorplan: Floorplan) -> None:
    """Upsert every document of the floorplan; does not delete rows missing from it."""
    data = floorplan.to_dict()
    session.merge(SeatingSettingsDoc(unit_id=unit_id, settings_json=_dumps(data["settings"]), updated_at=_utc_now()))
    for doc in data["zones"]:
        session.merge(ZoneDoc(unit_id=unit_id, id=doc["id"], doc_json=_dumps(doc)))
    for doc in data["tables"]:
        session.merge(TableDoc(unit_id=unit_id, id=doc["id"], doc_json=_dumps(doc)))
    for doc in data["combinations"]:
        session.merge(TableCombinationDoc(unit_id=unit_id, id=doc["id"], doc_json=_dumps(doc)))


def taken_table_ids(
    session: Session,
    unit_id: str,
    booking_id: str,
    start_time: datetime,
    end_time: datetime,
    buffer_minutes: int,
) -> set[str]:
    """
    Tables assigned to other live bookings overlapping [start - buffer, end + buffer).

    Candidates are found by start time only, looking back LOOKBACK before the
    widened window; longer bookings are not seen.
    """
    buffer = timedelta(minutes=buffer_minutes)
    window_start = to_utc_naive(start_time) - buffer
    window_end = to_utc_naive(end_time) + buffer

    stmt = select(Booking).where(
        Booking.unit_id == unit_id,
        Booking.start_time >= window_start - LOOKBACK,
        Booking.start_time <= window_end,
    )
    taken: set[str] = set()
    for b in session.exec(stmt):
        if b.id == booking_id or b.status == CANCELLED:
            continue
        if b.start_time is None or b.end_time is None:
            continue
        if window_start < b.end_time and b.start_time < window_end:
            taken.update(b.assigned_table_ids())
    return taken


def available_inventory(
    tables: Sequence[Table], combinations: Sequence[TableCombination], taken: set[str]
) -> tuple[list[Table], list[TableCombination]]:
    free = [t for t in tables if t.id not in taken]
    free_ids = {t.id for t in free}
    combos = [c for c in combinations if all(tid in free_ids for tid in c.table_ids)]
    return free, combos
