from __future__ import annotations

import math
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import AllocationMode, AllocationSnapshot, AllocationStrategy, EmergencyRule, ZoneType


class _Doc(BaseModel):
    # Stored documents use camelCase keys; python callers may use field names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_tags(v: Any) -> list[str]:
    if not isinstance(v, (list, tuple)):
        return []
    out = []
    for tag in v:
        t = tag.strip().lower() if isinstance(tag, str) else ""
        if t:
            out.append(t)
    return out


def _bool_or(v: Any, default: bool) -> bool:
    return v if isinstance(v, bool) else default


def _int_or_none(v: Any) -> Optional[int]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    if isinstance(v, float) and not v.is_integer():
        return None
    return int(v)


def _id_list(v: Any) -> list[str]:
    if not isinstance(v, (list, tuple)):
        return []
    return [x for x in v if isinstance(x, str) and x]


def _enum_or(v: Any, enum_cls: type[Enum], default: Any) -> Any:
    if isinstance(v, enum_cls):
        return v
    if isinstance(v, str) and v in {m.value for m in enum_cls}:
        return v
    return default


class Zone(_Doc):
    id: str = ""
    name: Optional[str] = None
    is_active: bool = True
    tags: list[str] = Field(default_factory=list)
    type: Optional[ZoneType] = None
    priority: Optional[float] = None

    @field_validator("is_active", mode="before")
    @classmethod
    def _active(cls, v: Any) -> bool:
        return _bool_or(v, True)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> list[str]:
        return _clean_tags(v)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> Optional[str]:
        return _enum_or(v, ZoneType, None)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, v: Any) -> Optional[float]:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or math.isnan(v):
            return None
        return v

    @classmethod
    def from_doc(cls, raw: Optional[dict], id_fallback: str = "") -> "Zone":
        data = dict(raw or {})
        if not isinstance(data.get("id"), str):
            data["id"] = id_fallback
        return cls.model_validate(data)


class Table(_Doc):
    id: str = ""
    zone_id: Optional[str] = None
    is_active: bool = True
    table_group: Optional[str] = None
    can_combine: bool = False
    tags: list[str] = Field(default_factory=list)
    min_capacity: Optional[int] = None
    capacity_max: Optional[int] = None
    can_seat_solo: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_combinable(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        current = data.get("canCombine", data.get("can_combine"))
        if not isinstance(current, bool):
            legacy = data.get("isCombinable")
            data = {k: v for k, v in data.items() if k != "can_combine"}
            data["canCombine"] = legacy if isinstance(legacy, bool) else False
        return data

    @field_validator("is_active", mode="before")
    @classmethod
    def _active(cls, v: Any) -> bool:
        return _bool_or(v, True)

    @field_validator("zone_id", "table_group", mode="before")
    @classmethod
    def _str_or_none(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> list[str]:
        return _clean_tags(v)

    @field_validator("min_capacity", "capacity_max", mode="before")
    @classmethod
    def _capacity(cls, v: Any) -> Optional[int]:
        return _int_or_none(v)

    @field_validator("can_seat_solo", mode="before")
    @classmethod
    def _solo(cls, v: Any) -> Optional[bool]:
        return v if isinstance(v, bool) else None

    @property
    def min_seats(self) -> int:
        return self.min_capacity if self.min_capacity is not None else 1

    @property
    def max_seats(self) -> int:
        return self.capacity_max if self.capacity_max is not None else 2

    @classmethod
    def from_doc(cls, raw: Optional[dict], id_fallback: str = "") -> "Table":
        data = dict(raw or {})
        if not isinstance(data.get("id"), str):
            data["id"] = id_fallback
        return cls.model_validate(data)


class TableCombination(_Doc):
    id: str = ""
    table_ids: list[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("is_active", mode="before")
    @classmethod
    def _active(cls, v: Any) -> bool:
        return _bool_or(v, True)

    @classmethod
    def from_doc(cls, raw: Optional[dict], id_fallback: str = "") -> Optional["TableCombination"]:
        """Returns None for documents without a usable tableIds list of string ids."""
        data = dict(raw or {})
        table_ids = data.get("tableIds")
        if not isinstance(table_ids, list) or not all(isinstance(t, str) for t in table_ids):
            return None
        if not isinstance(data.get("id"), str):
            data["id"] = id_fallback
        return cls.model_validate(data)


class EmergencyZones(_Doc):
    enabled: bool = False
    zone_ids: list[str] = Field(default_factory=list)
    active_rule: EmergencyRule = EmergencyRule.always
    weekdays: list[int] = Field(default_factory=list)  # 0 = Sunday

    @field_validator("enabled", mode="before")
    @classmethod
    def _enabled(cls, v: Any) -> bool:
        return _bool_or(v, False)

    @field_validator("zone_ids", mode="before")
    @classmethod
    def _ids(cls, v: Any) -> list[str]:
        return _id_list(v)

    @field_validator("active_rule", mode="before")
    @classmethod
    def _rule(cls, v: Any) -> Any:
        return _enum_or(v, EmergencyRule, EmergencyRule.always)

    @field_validator("weekdays", mode="before")
    @classmethod
    def _weekdays(cls, v: Any) -> list[int]:
        if not isinstance(v, (list, tuple)):
            return []
        days = [_int_or_none(d) for d in v]
        return [d for d in days if d is not None and 0 <= d <= 6]


class SeatingSettings(_Doc):
    """
    Per-unit seating configuration.

    Defaults are applied here, once, when a settings document is parsed:
    allocation disabled, capacity mode, bestFit strategy, pairs of tables at most,
    no cross-zone combinations, 15 minute occupancy buffer. A missing, null or
    unusable value falls back to its default, so a stored document never fails
    to parse.
    """

    allocation_enabled: bool = False
    allocation_mode: AllocationMode = AllocationMode.capacity
    allocation_strategy: AllocationStrategy = AllocationStrategy.best_fit
    zone_priority: list[str] = Field(default_factory=list)
    overflow_zones: list[str] = Field(default_factory=list)
    emergency_zones: EmergencyZones = Field(default_factory=EmergencyZones)
    max_combine_count: int = 2
    allow_cross_zone_combinations: bool = False
    solo_allowed_table_ids: list[str] = Field(default_factory=list)
    buffer_minutes: int = Field(default=15, ge=0)
    default_zone_id: str = ""

    @classmethod
    def _default_for(cls, name: str) -> Any:
        return cls.model_fields[name].get_default(call_default_factory=True)

    @field_validator("zone_priority", "overflow_zones", "solo_allowed_table_ids", mode="before")
    @classmethod
    def _ids(cls, v: Any) -> list[str]:
        return _id_list(v)

    @field_validator("allocation_enabled", "allow_cross_zone_combinations", mode="before")
    @classmethod
    def _flags(cls, v: Any, info) -> bool:
        return _bool_or(v, cls._default_for(info.field_name))

    @field_validator("allocation_mode", mode="before")
    @classmethod
    def _mode(cls, v: Any) -> Any:
        return _enum_or(v, AllocationMode, AllocationMode.capacity)

    @field_validator("allocation_strategy", mode="before")
    @classmethod
    def _strategy(cls, v: Any) -> Any:
        return _enum_or(v, AllocationStrategy, AllocationStrategy.best_fit)

    @field_validator("emergency_zones", mode="before")
    @classmethod
    def _emergency(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, EmergencyZones)) else EmergencyZones()

    @field_validator("max_combine_count", "buffer_minutes", mode="before")
    @classmethod
    def _counts(cls, v: Any, info) -> int:
        n = _int_or_none(v)
        return n if n is not None and n >= 0 else cls._default_for(info.field_name)

    @field_validator("default_zone_id", mode="before")
    @classmethod
    def _default_zone(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @classmethod
    def from_doc(cls, raw: Optional[dict]) -> "SeatingSettings":
        return cls.model_validate(raw if isinstance(raw, dict) else {})

    def snapshot(self) -> AllocationSnapshot:
        return AllocationSnapshot(
            overflow_zones_count=len(self.overflow_zones),
            zone_priority_count=len(self.zone_priority),
            emergency_zones_count=len(self.emergency_zones.zone_ids),
        )
