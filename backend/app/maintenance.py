"""Batch scan and cleanup of stored capacity documents."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterator, Optional

from sqlmodel import Session, select

from seat_allocation.capacity import build_cleanup_write, detect_capacity_anomalies

from .db import get_session, with_transaction
from .models import CapacityDocument
from .store import SqlLedgerTransaction

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 200
DEFAULT_PAGE_SIZE = 200


@dataclass
class ScanSummary:
    scanned: int = 0
    anomalies_found: int = 0
    anomaly_counts: dict[str, int] = field(default_factory=dict)
    limit: int = DEFAULT_LIMIT
    unit_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    next_cursor: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CleanupSummary:
    scanned: int = 0
    changed: int = 0
    skipped: int = 0
    deleted_by_time_slot: int = 0
    planned_writes: int = 0
    committed_writes: int = 0
    dry_run: bool = True
    limit: int = DEFAULT_LIMIT
    unit_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    next_cursor: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Walk:
    stopped_by_limit: bool = False
    last_key: Optional[str] = None

    @property
    def next_cursor(self) -> Optional[str]:
        return self.last_key if self.stopped_by_limit else None


def _unit_ids(session: Session, unit_id: Optional[str]) -> list[str]:
    if unit_id:
        return [unit_id]
    return sorted(set(session.exec(select(CapacityDocument.unit_id))))


def _iter_documents(
    session: Session,
    walk: _Walk,
    unit_id: Optional[str],
    date_from: Optional[str],
    date_to: Optional[str],
    limit: int,
    page_size: int,
    cursor: Optional[str],
) -> Iterator[CapacityDocument]:
    """
    Capacity rows ordered by (unit, date key), at most `limit` of them, fetched a page at a time.

    `cursor` is a date key to start after; it applies to the first page of every unit.
    `walk` records whether the limit cut the walk short and the last key seen.
    """
    if limit <= 0 or page_size <= 0:
        raise ValueError("limit and page_size must be positive")
    remaining = limit
    for current_unit in _unit_ids(session, unit_id):
        after = cursor
        while remaining > 0:
            stmt = select(CapacityDocument).where(CapacityDocument.unit_id == current_unit)
            if date_from:
                stmt = stmt.where(CapacityDocument.date_key >= date_from)
            if date_to:
                stmt = stmt.where(CapacityDocument.date_key <= date_to)
            if after:
                stmt = stmt.where(CapacityDocument.date_key > after)
            stmt = stmt.order_by(CapacityDocument.date_key).limit(min(page_size, remaining))
            page = list(session.exec(stmt))
            if not page:
                break
            for row in page:
                remaining -= 1
                after = row.date_key
                walk.last_key = row.date_key
                yield row
                if remaining <= 0:
                    walk.stopped_by_limit = True
                    return


def scan_capacity(
    unit_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    *,
    limit: int = DEFAULT_LIMIT,
    page_size: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
    session_factory: Callable[[], Session] = get_session,
) -> ScanSummary:
    """Read-only invariant scan; anomalous documents are logged one line each."""
    summary = ScanSummary(limit=limit, unit_id=unit_id, date_from=date_from, date_to=date_to)
    walk = _Walk()
    with session_factory() as session:
        for row in _iter_documents(session, walk, unit_id, date_from, date_to, limit, page_size, cursor):
            summary.scanned += 1
            result = detect_capacity_anomalies(row.doc())
            if result.ok:
                continue
            summary.anomalies_found += 1
            for anomaly in result.anomalies:
                summary.anomaly_counts[anomaly] = summary.anomaly_counts.get(anomaly, 0) + 1
            logger.warning("capacity anomalies %s/%s: %s", row.unit_id, row.date_key, ",".join(result.anomalies))
    summary.next_cursor = walk.next_cursor
    return summary


def _apply_cleanup(unit_id: str, date_key: str, session_factory: Callable[[], Session]) -> bool:
    """Re-plan and write the corrective doc inside a transaction; False if it became canonical meanwhile."""

    def txn(session: Session) -> bool:
        tx = SqlLedgerTransaction(session)
        raw = tx.get_capacity(unit_id, date_key)
        write = build_cleanup_write(raw)
        if write is None:
            return False
        doc = dict(raw or {})
        doc.update(write.payload)
        if write.deletes_by_time_slot:
            doc.pop("byTimeSlot", None)
        tx.set_capacity(unit_id, date_key, doc)
        return True

    return with_transaction(txn, session_factory=session_factory)


def cleanup_capacity(
    unit_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    *,
    dry_run: bool = True,
    limit: int = DEFAULT_LIMIT,
    page_size: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
    session_factory: Callable[[], Session] = get_session,
) -> CleanupSummary:
    """
    Rewrite non-canonical capacity documents to their normalized form.

    With dry_run nothing is written; the summary still reports what would change.
    Fields other than the counts and the slot map are preserved.
    """
    summary = CleanupSummary(dry_run=dry_run, limit=limit, unit_id=unit_id, date_from=date_from, date_to=date_to)
    walk = _Walk()
    planned: list[tuple[str, str]] = []
    with session_factory() as session:
        for row in _iter_documents(session, walk, unit_id, date_from, date_to, limit, page_size, cursor):
            summary.scanned += 1
            write = build_cleanup_write(row.doc())
            if write is None:
                summary.skipped += 1
                continue
            summary.changed += 1
            summary.planned_writes += 1
            if write.deletes_by_time_slot:
                summary.deleted_by_time_slot += 1
            logger.info(
                "capacity cleanup %s/%s %s deletesByTimeSlot=%s keys=%s",
                row.unit_id,
                row.date_key,
                "dry-run" if dry_run else "apply",
                write.deletes_by_time_slot,
                ",".join(sorted(write.payload)),
            )
            planned.append((row.unit_id, row.date_key))

    if not dry_run:
        for plan_unit, date_key in planned:
            if _apply_cleanup(plan_unit, date_key, session_factory):
                summary.committed_writes += 1
    summary.next_cursor = walk.next_cursor
    return summary
