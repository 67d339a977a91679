from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _loads(raw: Optional[str]) -> Any:
    if not raw:
        return None
    return json.loads(raw)


class CapacityDocument(SQLModel, table=True):
    """Per-day headcount aggregate: {totalCount, count, byTimeSlot?, lastMutationTraceId?}."""

    unit_id: str = Field(primary_key=True)
    date_key: str = Field(primary_key=True)  # YYYY-MM-DD

    doc_json: str = "{}"
    version: int = 0

    updated_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())

    def doc(self) -> dict:
        return _loads(self.doc_json) or {}


class Booking(SQLModel, table=True):
    unit_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)

    status: str = ""
    headcount: int = 0
    # Naive UTC; callers convert with store.to_utc_naive.
    start_time: Optional[NaiveDatetime] = Field(default=None, index=True, sa_type=DateTime())
    end_time: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime())
    time_slot: Optional[str] = None

    zone_id: Optional[str] = None
    # JSON list of table ids
    assigned_table_ids_json: str = "[]"
    # JSON ledger {applied, key, count, slotKey, appliedAt, lastMutationTraceId}
    capacity_ledger_json: Optional[str] = None
    # JSON allocation record, see seat_allocation.audit.AllocationRecord
    allocation_json: Optional[str] = None

    version: int = 0
    created_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())
    updated_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())

    def assigned_table_ids(self) -> list[str]:
        return [str(t) for t in (_loads(self.assigned_table_ids_json) or [])]

    def capacity_ledger(self) -> Optional[dict]:
        return _loads(self.capacity_ledger_json)


class SeatingSettingsDoc(SQLModel, table=True):
    unit_id: str = Field(primary_key=True)
    settings_json: str = "{}"
    updated_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())


class ZoneDoc(SQLModel, table=True):
    unit_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    doc_json: str = "{}"


class TableDoc(SQLModel, table=True):
    unit_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    doc_json: str = "{}"


class TableCombinationDoc(SQLModel, table=True):
    unit_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    doc_json: str = "{}"


class AllocationLog(SQLModel, table=True):
    """One decision audit entry per booking; rewritten on every decision."""

    unit_id: str = Field(primary_key=True)
    booking_id: str = Field(primary_key=True)

    event_id: str = Field(index=True)
    payload_json: str = "{}"

    created_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())
    updated_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())


class CapacityOverride(SQLModel, table=True):
    """Manual admission override for one day: {enabled, decision, reasonCode?, source?}."""

    unit_id: str = Field(primary_key=True)
    date_key: str = Field(primary_key=True)
    doc_json: str = "{}"
    updated_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())


class AdmissionAuditLog(SQLModel, table=True):
    """Admission decision audit body; one row per unit, day and admission trace id."""

    unit_id: str = Field(primary_key=True)
    date_key: str = Field(primary_key=True)
    trace_id: str = Field(primary_key=True)

    payload_json: str = "{}"

    created_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())
    updated_at: NaiveDatetime = Field(default_factory=_utc_now, sa_type=DateTime())
