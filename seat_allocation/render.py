from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .capacity import ScanResult
from .models import AllocationDecision, CapacityMutation


def _cell(text: Optional[object], width: int) -> str:
    if text is None or text == "":
        return "-".ljust(width)
    t = str(text)
    if len(t) > width:
        t = t[: max(0, width - 1)] + "…"
    return t.ljust(width)


def render_table(headers: Sequence[str], rows: Iterable[Sequence[object]], *, cell_width: int = 14) -> str:
    cell_width = max(3, int(cell_width))
    lines = [" ".join(_cell(h, cell_width) for h in headers).rstrip()]
    for row in rows:
        lines.append(" ".join(_cell(v, cell_width) for v in row).rstrip())
    return "\n".join(lines)


def render_decision(decision: AllocationDecision) -> str:
    tables = ",".join(decision.table_ids) or None
    mode = decision.allocation_mode.value if decision.allocation_mode else None
    strategy = decision.allocation_strategy.value if decision.allocation_strategy else None
    return render_table(
        ["reason", "zone", "tables", "mode", "strategy"],
        [[decision.reason.value, decision.zone_id, tables, mode, strategy]],
        cell_width=20,
    )


def render_plan(plan: Sequence[CapacityMutation]) -> str:
    if not plan:
        return "no capacity change"
    rows = []
    for m in plan:
        slots = ",".join(f"{k}:{v:+g}" for k, v in sorted(m.slot_deltas.items())) or None
        rows.append([m.key, f"{m.total_delta:+g}", slots])
    return render_table(["date", "total", "slots"], rows, cell_width=24)


def render_scan(results: Sequence[tuple[str, ScanResult]], *, cell_width: int = 14) -> str:
    # the anomaly list is the last column and is never truncated
    headers = ["date", "totalCount", "count", "slotSum"]
    lines = [" ".join(_cell(h, cell_width) for h in headers) + " anomalies"]
    for key, r in results:
        cells = " ".join(_cell(v, cell_width) for v in (key, r.total_count, r.count, r.by_time_slot_sum))
        lines.append(f"{cells} {','.join(r.anomalies) or 'ok'}")
    return "\n".join(lines)
