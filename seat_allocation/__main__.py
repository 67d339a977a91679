from __future__ import annotations

import argparse
import json
import logging
from datetime import date

from .capacity import build_cleanup_write, detect_capacity_anomalies
from .decision import decide_for_booking, suggest_allocation_decision
from .models import AllocationError
from .planner import compute_mutation_plan, counts_toward_capacity
from .render import render_decision, render_plan, render_scan
from .storage import load_floorplan, maybe_init_floorplan, read_json

DEFAULT_FILE = "floorplan.json"
_DOC_FIELDS = {"totalCount", "count", "byTimeSlot"}


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--file",
        default=DEFAULT_FILE,
        help=f"Path to floorplan JSON file (default: {DEFAULT_FILE})",
    )


def _date_arg(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def cmd_init(args: argparse.Namespace) -> int:
    fp = maybe_init_floorplan(args.file, overwrite=args.overwrite)
    print(f"Initialized floorplan at {args.file} ({len(fp.zones)} zones, {len(fp.tables)} tables)")
    return 0


def cmd_suggest(args: argparse.Namespace) -> int:
    fp = load_floorplan(args.file)
    decide = suggest_allocation_decision if args.force else decide_for_booking
    decision = decide(args.party_size, args.date, fp.settings, fp.zones, fp.tables, fp.combinations)
    if args.json:
        print(json.dumps(decision.to_dict(), indent=2))
    else:
        print(render_decision(decision))
    return 0 if decision.assigned else 1


def cmd_plan(args: argparse.Namespace) -> int:
    plan = compute_mutation_plan(
        old_key=args.old_key,
        new_key=args.new_key or args.old_key,
        old_count=args.old_count,
        new_count=args.new_count if args.new_count is not None else args.old_count,
        old_included=counts_toward_capacity(args.old_status),
        new_included=counts_toward_capacity(args.new_status),
        old_slot_key=args.old_slot,
        new_slot_key=args.new_slot,
    )
    print(render_plan(plan))
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    data = read_json(args.capacity)
    if isinstance(data, dict) and (not data or _DOC_FIELDS & set(data)):
        docs = {"<doc>": data}
    elif isinstance(data, dict):
        docs = data
    else:
        raise AllocationError("capacity file must hold a document or a {dateKey: document} object")

    results = [(key, detect_capacity_anomalies(doc)) for key, doc in sorted(docs.items())]
    print(render_scan(results))
    for key, doc in sorted(docs.items()):
        write = build_cleanup_write(doc)
        if write is not None:
            print(f"{key}: would write {json.dumps(write.payload, sort_keys=True)} deletesByTimeSlot={write.deletes_by_time_slot}")
    return 1 if any(not r.ok for _, r in results) else 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="seat_allocation", description="Seat allocation and capacity ledger tools.")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Create a starter floorplan JSON file")
    _add_common_args(p_init)
    p_init.add_argument("--overwrite", action="store_true", help="Overwrite existing floorplan file")
    p_init.set_defaults(func=cmd_init)

    p_suggest = sub.add_parser("suggest", help="Suggest a zone and tables for a party")
    _add_common_args(p_suggest)
    p_suggest.add_argument("--party-size", type=int, required=True)
    p_suggest.add_argument("--date", type=_date_arg, required=True, help="Booking date (YYYY-MM-DD)")
    p_suggest.add_argument("--force", action="store_true", help="Ignore allocationEnabled=false")
    p_suggest.add_argument("--json", action="store_true", help="Print the decision as JSON")
    p_suggest.set_defaults(func=cmd_suggest)

    p_plan = sub.add_parser("plan", help="Show the capacity deltas for a booking transition")
    p_plan.add_argument("--old-key", required=True, help="Date key before the change")
    p_plan.add_argument("--new-key", help="Date key after the change (default: old key)")
    p_plan.add_argument("--old-count", type=int, required=True)
    p_plan.add_argument("--new-count", type=int, help="Headcount after the change (default: old count)")
    p_plan.add_argument("--old-status", default="")
    p_plan.add_argument("--new-status", default="")
    p_plan.add_argument("--old-slot")
    p_plan.add_argument("--new-slot")
    p_plan.set_defaults(func=cmd_plan)

    p_check = sub.add_parser("check", help="Scan capacity documents from a JSON file for invariant violations")
    p_check.add_argument("--capacity", required=True, help="JSON file with one document or {dateKey: document}")
    p_check.set_defaults(func=cmd_check)

    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return int(args.func(args))
    except AllocationError as e:
        print(f"Error: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
