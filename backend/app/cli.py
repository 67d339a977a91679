from __future__ import annotations

import argparse
import json
import logging
import os
import re
from datetime import date
from typing import Optional

from seat_allocation.models import AllocationError

from .db import init_db
from .maintenance import DEFAULT_LIMIT, DEFAULT_PAGE_SIZE, cleanup_capacity, scan_capacity

LOCAL_PROJECT = "demo-local"

_DATE_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _date_key(value: Optional[str], flag: str) -> Optional[str]:
    if value is None:
        return None
    if not _DATE_KEY.match(value):
        raise AllocationError(f"{flag} must be YYYY-MM-DD, got {value!r}")
    try:
        date.fromisoformat(value)
    except ValueError as e:
        raise AllocationError(f"{flag} is not a calendar date: {value!r}") from e
    return value


def _range(args: argparse.Namespace) -> tuple[Optional[str], Optional[str]]:
    date_from = _date_key(args.date_from, "--from")
    date_to = _date_key(args.date_to, "--to")
    if date_from and date_to and date_from > date_to:
        raise AllocationError("--from must be on or before --to")
    return date_from, date_to


def _project(args: argparse.Namespace) -> Optional[str]:
    return args.project or os.environ.get("SEAT_ALLOCATION_PROJECT") or None


def _print_summary(name: str, summary: dict) -> None:
    print(f"[{name}] summary {json.dumps(summary, sort_keys=True)}")
    cursor = summary.get("next_cursor")
    print(f"[{name}] nextCursor={cursor or 'null'} done={cursor is None}")


def cmd_scan(args: argparse.Namespace) -> int:
    date_from, date_to = _range(args)
    init_db()
    summary = scan_capacity(
        args.unit, date_from, date_to, limit=args.limit, page_size=args.page_size, cursor=args.cursor
    )
    _print_summary("capacity-scan", summary.to_dict())
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    date_from, date_to = _range(args)
    dry_run = not args.apply
    if not dry_run:
        project = _project(args)
        if not project or project == LOCAL_PROJECT:
            raise AllocationError("--apply needs an explicit --project (or SEAT_ALLOCATION_PROJECT) other than the local default")
        if not args.yes:
            raise AllocationError("--apply needs --yes")
    init_db()
    summary = cleanup_capacity(
        args.unit,
        date_from,
        date_to,
        dry_run=dry_run,
        limit=args.limit,
        page_size=args.page_size,
        cursor=args.cursor,
    )
    _print_summary("capacity-cleanup", summary.to_dict())
    return 0


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--project", help="Project id (default: $SEAT_ALLOCATION_PROJECT)")
    p.add_argument("--unit", help="Only this unit (default: every unit)")
    p.add_argument("--from", dest="date_from", help="First date key, inclusive (YYYY-MM-DD)")
    p.add_argument("--to", dest="date_to", help="Last date key, inclusive (YYYY-MM-DD)")
    p.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help=f"Max documents to visit (default: {DEFAULT_LIMIT})")
    p.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE, help=f"Rows per query (default: {DEFAULT_PAGE_SIZE})")
    p.add_argument("--cursor", help="Start after this date key (nextCursor of a previous run)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="capacity-maintenance", description="Scan and repair capacity documents.")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_scan = sub.add_parser("scan", help="Report capacity documents that break the invariants")
    _add_common_args(p_scan)
    p_scan.set_defaults(func=cmd_scan)

    p_cleanup = sub.add_parser("cleanup", help="Normalize capacity documents (dry-run unless --apply)")
    _add_common_args(p_cleanup)
    mode = p_cleanup.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Only report planned writes (default)")
    mode.add_argument("--apply", action="store_true", help="Write the corrected documents")
    p_cleanup.add_argument("--yes", action="store_true", help="Confirm --apply")
    p_cleanup.set_defaults(func=cmd_cleanup)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return int(args.func(args))
    except (AllocationError, ValueError) as e:
        print(f"Error: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
