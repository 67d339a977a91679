from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlmodel import Session

from seat_allocation.admission import AdmissionResult, BookableWindow, decide_admission, override_from_doc
from seat_allocation.audit import DEFAULT_ALGO_VERSION, build_allocation_record, decision_event_id
from seat_allocation.capacity import read_capacity_total
from seat_allocation.decision import decide_for_booking
from seat_allocation.ledger import CapacityLedgerService, LedgerOutcome, to_date_key
from seat_allocation.models import AllocationDecision, AllocationReason, InvalidInputError

from .db import DEFAULT_ATTEMPTS, get_session, with_transaction
from .models import AdmissionAuditLog, AllocationLog, CapacityDocument, CapacityOverride, _utc_now
from .store import (
    SqlLedgerTransaction,
    available_inventory,
    fetch_floorplan,
    fetch_seating_settings,
    taken_table_ids,
    to_utc_naive,
)

logger = logging.getLogger(__name__)

# Process-wide so its warn-once cache spans requests.
ledger_service = CapacityLedgerService()


def algo_version() -> str:
    return os.environ.get("SEAT_ALLOCATION_ALGO_VERSION") or DEFAULT_ALGO_VERSION


def compute_allocation_decision_for_booking(
    session: Session,
    unit_id: str,
    booking_id: str,
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    party_size: int,
) -> AllocationDecision:
    if not unit_id:
        raise InvalidInputError("unit_id is required")
    if start_time is None or end_time is None:
        raise InvalidInputError("start_time and end_time are required")

    settings = fetch_seating_settings(session, unit_id)
    if not settings.allocation_enabled:
        return decide_for_booking(party_size, start_time, settings, [], [])

    fp = fetch_floorplan(session, unit_id)
    taken = taken_table_ids(session, unit_id, booking_id, start_time, end_time, settings.buffer_minutes)
    tables, combos = available_inventory(fp.tables, fp.combinations, taken)
    return decide_for_booking(party_size, start_time, settings, fp.zones, tables, combos)


def write_allocation_decision_log(
    unit_id: str,
    booking_id: str,
    start_time: datetime,
    end_time: datetime,
    party_size: int,
    decision: AllocationDecision,
    *,
    source: str = "bookingSubmit",
    version: Optional[str] = None,
    session_factory: Callable[[], Session] = get_session,
) -> Optional[str]:
    """
    Upsert the decision audit entry for a booking and return its event id.

    Runs in its own session; a failure is logged and reported as None, never raised.
    """
    version = version or algo_version()
    try:
        event_id = decision_event_id(unit_id, booking_id, start_time, end_time, party_size, decision, version)
        payload = {
            "type": "decision",
            "bookingId": booking_id,
            "bookingStartTime": start_time.isoformat(),
            "bookingEndTime": end_time.isoformat(),
            "partySize": party_size,
            "selectedZoneId": decision.zone_id,
            "selectedTableIds": list(decision.table_ids),
            "reason": decision.reason.value,
            "allocationMode": decision.allocation_mode.value if decision.allocation_mode else None,
            "allocationStrategy": decision.allocation_strategy.value if decision.allocation_strategy else None,
            "snapshot": decision.snapshot.to_dict(),
            "algoVersion": version,
            "source": source,
            "eventId": event_id,
        }
        with session_factory() as session:
            row = session.get(AllocationLog, (unit_id, booking_id))
            if row is None:
                row = AllocationLog(unit_id=unit_id, booking_id=booking_id, event_id=event_id)
            row.event_id = event_id
            row.payload_json = json.dumps(payload, sort_keys=True)
            row.updated_at = _utc_now()
            session.add(row)
            session.commit()
    except Exception:
        logger.exception("allocation decision log failed unit=%s booking=%s", unit_id, booking_id)
        return None
    logger.info("allocation decision log ok unit=%s booking=%s event=%s", unit_id, booking_id, event_id)
    return event_id


def allocate_booking(
    unit_id: str,
    booking_id: str,
    *,
    source: str = "bookingSubmit",
    attempts: int = DEFAULT_ATTEMPTS,
    session_factory: Callable[[], Session] = get_session,
    now: Optional[Callable[[], datetime]] = None,
) -> AllocationDecision:
    """Decide zone/tables for a stored booking, record them on it and write the audit entry."""
    now = now or (lambda: datetime.now(timezone.utc))
    version = algo_version()

    def txn(session: Session) -> tuple[AllocationDecision, datetime, datetime, int]:
        tx = SqlLedgerTransaction(session)
        booking = tx.get_booking(unit_id, booking_id)
        if not booking:
            raise InvalidInputError(f"booking not found: {unit_id}/{booking_id}")
        start, end, headcount = booking["startTime"], booking["endTime"], booking["headcount"]
        decision = compute_allocation_decision_for_booking(session, unit_id, booking_id, start, end, headcount)
        trace_id = decision_event_id(unit_id, booking_id, start, end, headcount, decision, version)[:16]
        record = build_allocation_record(decision, trace_id, now(), start, end, headcount, version)
        if record is not None:
            tx.update_booking(
                unit_id,
                booking_id,
                zone_id=record.zone_id,
                assigned_table_ids_json=json.dumps(list(record.table_ids)),
                allocation_json=json.dumps(record.to_dict(), sort_keys=True),
            )
        elif decision.reason != AllocationReason.allocation_disabled:
            # nothing fits any more; release the previous tables
            tx.update_booking(unit_id, booking_id, zone_id=None, assigned_table_ids_json="[]", allocation_json=None)
        return decision, start, end, headcount

    decision, start, end, headcount = with_transaction(txn, attempts=attempts, session_factory=session_factory)
    write_allocation_decision_log(
        unit_id, booking_id, start, end, headcount, decision, source=source, version=version, session_factory=session_factory
    )
    return decision


def apply_booking_transition(
    unit_id: str,
    booking_id: str,
    next_status: Optional[str],
    next_start_time: Optional[datetime],
    next_headcount: int,
    next_time_slot: Optional[str] = None,
    mutation_trace_id: Optional[str] = None,
    *,
    next_end_time: Optional[datetime] = None,
    service: Optional[CapacityLedgerService] = None,
    attempts: int = DEFAULT_ATTEMPTS,
    session_factory: Callable[[], Session] = get_session,
) -> LedgerOutcome:
    """
    Move a booking to a new status/date/headcount/slot and keep the day aggregates in step.

    The capacity documents and the booking row commit together; conflicts re-run
    the whole transition with the same mutation trace id.
    """
    if not unit_id or not booking_id:
        raise InvalidInputError("unit_id and booking_id are required")
    if next_start_time is None:
        raise InvalidInputError("next_start_time is required")
    service = service or ledger_service
    date_key = to_date_key(next_start_time)

    def txn(session: Session) -> LedgerOutcome:
        tx = SqlLedgerTransaction(session)
        booking = tx.get_booking(unit_id, booking_id)
        if not booking:
            raise InvalidInputError(f"booking not found: {unit_id}/{booking_id}")
        outcome = service.apply(
            tx,
            unit_id,
            booking_id,
            next_status,
            date_key,
            next_headcount,
            next_slot_key=next_time_slot,
            mutation_trace_id=mutation_trace_id,
            booking=booking,
        )
        if not outcome.replayed:
            values = dict(
                status=next_status or "",
                headcount=next_headcount,
                start_time=to_utc_naive(next_start_time),
                time_slot=next_time_slot,
            )
            if next_end_time is not None:
                values["end_time"] = to_utc_naive(next_end_time)
            tx.update_booking(unit_id, booking_id, **values)
        return outcome

    return with_transaction(txn, attempts=attempts, session_factory=session_factory)


def write_admission_audit_log(
    audit_log: dict, *, session_factory: Callable[[], Session] = get_session
) -> Optional[str]:
    """Upsert an admission audit body under (unit, day, trace id); returns the trace id or None on failure."""
    unit_id, trace_id = audit_log.get("unitId"), audit_log.get("traceId")
    if not unit_id or not trace_id:
        return None
    date_key = audit_log.get("dateKey") or ""
    try:
        with session_factory() as session:
            row = session.get(AdmissionAuditLog, (unit_id, date_key, trace_id))
            if row is None:
                row = AdmissionAuditLog(unit_id=unit_id, date_key=date_key, trace_id=trace_id)
            row.payload_json = json.dumps(audit_log, sort_keys=True, default=str)
            row.updated_at = _utc_now()
            session.add(row)
            session.commit()
    except Exception:
        logger.exception("admission audit log failed unit=%s date=%s trace=%s", unit_id, date_key, trace_id)
        return None
    return trace_id


def evaluate_admission(
    session: Session,
    unit_id: str,
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    party_size: int,
    *,
    limit: Optional[int] = None,
    window: Optional[BookableWindow] = None,
    audit_session_factory: Optional[Callable[[], Session]] = get_session,
) -> AdmissionResult:
    """
    Admission decision against the stored day aggregate and override.

    Reads through `session` only. The audit body is then written best-effort in a
    session of its own; pass audit_session_factory=None to skip it.
    """
    date_key = to_date_key(start_time) if isinstance(start_time, datetime) else None
    current = 0
    override = None
    if unit_id and date_key:
        cap = session.get(CapacityDocument, (unit_id, date_key))
        current = read_capacity_total(cap.doc()) if cap is not None else 0
        ovr = session.get(CapacityOverride, (unit_id, date_key))
        override = override_from_doc(json.loads(ovr.doc_json)) if ovr is not None else None
    result = decide_admission(
        unit_id,
        start_time,
        end_time,
        party_size,
        current,
        limit=limit,
        date_key=date_key,
        window=window,
        override=override,
    )
    if audit_session_factory is not None:
        write_admission_audit_log(result.audit_log, session_factory=audit_session_factory)
    return result
