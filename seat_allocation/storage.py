from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .models import AllocationError
from .schemas import SeatingSettings, Table, TableCombination, Zone


@dataclass
class Floorplan:
    settings: SeatingSettings = field(default_factory=SeatingSettings)
    zones: list[Zone] = field(default_factory=list)
    tables: list[Table] = field(default_factory=list)
    combinations: list[TableCombination] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "settings": self.settings.model_dump(mode="json", by_alias=True),
            "zones": [z.model_dump(mode="json", by_alias=True, exclude_none=True) for z in self.zones],
            "tables": [t.model_dump(mode="json", by_alias=True, exclude_none=True) for t in self.tables],
            "combinations": [c.model_dump(mode="json", by_alias=True) for c in self.combinations],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Floorplan":
        if not isinstance(data, dict):
            raise AllocationError("invalid floorplan data: expected a JSON object")
        try:
            combos = [TableCombination.from_doc(c, f"combo-{i}") for i, c in enumerate(data.get("combinations") or [])]
            return cls(
                settings=SeatingSettings.from_doc(data.get("settings")),
                zones=[Zone.from_doc(z, f"zone-{i}") for i, z in enumerate(data.get("zones") or [])],
                tables=[Table.from_doc(t, f"table-{i}") for i, t in enumerate(data.get("tables") or [])],
                combinations=[c for c in combos if c is not None],
            )
        except (ValidationError, TypeError) as e:
            raise AllocationError(f"invalid floorplan data: {e}") from e


def read_json(path: str | Path) -> Any:
    p = Path(path)
    if not p.exists():
        raise AllocationError(f"file not found: {p}")
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except Exception as e:  # noqa: BLE001
        raise AllocationError(f"failed to read JSON from {p}: {e}") from e


def load_floorplan(path: str | Path) -> Floorplan:
    return Floorplan.from_dict(read_json(path))


def save_floorplan(floorplan: Floorplan, path: str | Path) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(floorplan.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")


def maybe_init_floorplan(path: str | Path, *, overwrite: bool = False) -> Floorplan:
    p = Path(path)
    if p.exists() and not overwrite:
        return load_floorplan(p)

    floorplan = Floorplan(
        settings=SeatingSettings(allocation_enabled=True),
        zones=[Zone(id="main", name="Main room")],
        tables=[
            Table(id="T1", zone_id="main", min_capacity=1, capacity_max=2, can_combine=True),
            Table(id="T2", zone_id="main", min_capacity=1, capacity_max=2, can_combine=True),
        ],
        combinations=[TableCombination(id="T1+T2", table_ids=["T1", "T2"])],
    )
    save_floorplan(floorplan, p)
    return floorplan
