"""
Transform specification -- the declarative description of how raw records
become chart-ready rows.

A ``Transform`` is validated once, at construction, and is immutable
afterwards; the executor only reads it.  Field references are plain strings
(``"status"``), dotted relationship paths (``"product.category.name"``) or
tuples of path segments.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator

from chartflow.analytics.aggregator import AggregateKind

GROUP_KEY = "group_key"


class DatePeriod(str, Enum):
    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    HOUR = "hour"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


FieldRef = str | tuple[str, ...]


def _coerce_path(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def _check_path(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        raise ValueError("field reference must be non-empty")
    if isinstance(value, tuple):
        if not value:
            raise ValueError("field path must have at least one segment")
        if any(not str(p).strip() for p in value):
            raise ValueError("field path segments must be non-empty")
    return value


class FilterSpec(BaseModel):
    """Keep records whose *field* equals *value*, or is in it when a list."""
    model_config = ConfigDict(frozen=True)

    field: FieldRef = Field(..., description="Field name or relationship path")
    value: Any = Field(..., description="Scalar for equality, list for membership")

    normalise_field = field_validator("field", mode="before")(_coerce_path)

    @field_validator("field")
    @classmethod
    def field_not_empty(cls, v: Any) -> Any:
        return _check_path(v)

    @field_validator("value")
    @classmethod
    def value_not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("filter value must not be null")
        if isinstance(v, (set, frozenset)):
            return tuple(v)
        return v

    @property
    def is_membership(self) -> bool:
        return isinstance(self.value, (list, tuple))

    def matches(self, actual: Any) -> bool:
        if self.is_membership:
            return actual in self.value
        return actual == self.value


class AggregateSpec(BaseModel):
    """One named aggregation evaluated per group."""
    model_config = ConfigDict(frozen=True)

    type: AggregateKind
    field: FieldRef | None = None
    output_name: str = Field(..., min_length=1, description="Key of the result in each row")

    normalise_field = field_validator("field", mode="before")(_coerce_path)

    @field_validator("field")
    @classmethod
    def field_not_empty(cls, v: Any) -> Any:
        return v if v is None else _check_path(v)

    @model_validator(mode="after")
    def field_required(self) -> "AggregateSpec":
        if self.type is not AggregateKind.COUNT and self.field is None:
            raise ValueError(f"aggregate type '{self.type.value}' requires a field")
        return self


class DerivedDate(BaseModel):
    """Mapping source computing ``field + add_days`` on the group's first record."""
    model_config = ConfigDict(frozen=True)

    field: FieldRef
    add_days: int

    normalise_field = field_validator("field", mode="before")(_coerce_path)


MappingSource = DerivedDate | FieldRef


class SortSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    direction: SortDirection = SortDirection.ASC


class Transform(BaseModel):
    """Aggregate specification for one chart.

    Stages run in a fixed order: filters -> group_by -> aggregates ->
    mappings -> sort_by -> limit.
    """
    model_config = ConfigDict(frozen=True)

    filters: tuple[FilterSpec, ...] = ()
    group_by: FieldRef | None = None
    aggregates: tuple[AggregateSpec, ...] = ()
    mappings: dict[str, MappingSource] = Field(default_factory=dict)
    sort_by: SortSpec | None = None
    limit: PositiveInt | None = None

    # ── Input normalisation ─────────────────────────────

    @field_validator("filters", mode="before")
    @classmethod
    def filters_from_mapping(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return tuple({"field": k, "value": val} for k, val in v.items())
        return v

    @field_validator("group_by", mode="before")
    @classmethod
    def group_by_path(cls, v: Any) -> Any:
        return _coerce_path(v)

    @field_validator("group_by")
    @classmethod
    def group_by_not_empty(cls, v: Any) -> Any:
        return v if v is None else _check_path(v)

    @field_validator("aggregates", mode="before")
    @classmethod
    def aggregates_from_tuples(cls, v: Any) -> Any:
        if not isinstance(v, (list, tuple)):
            return v
        specs = []
        for item in v:
            if isinstance(item, (list, tuple)):
                if len(item) == 2:
                    item = {"type": item[0], "field": None, "output_name": item[1]}
                elif len(item) == 3:
                    item = {"type": item[0], "field": item[1], "output_name": item[2]}
                else:
                    raise ValueError(f"aggregate tuple must have 2 or 3 elements, got {item!r}")
            specs.append(item)
        return specs

    @field_validator("aggregates")
    @classmethod
    def unique_output_names(cls, v: tuple[AggregateSpec, ...]) -> tuple[AggregateSpec, ...]:
        seen: set[str] = set()
        for spec in v:
            if spec.output_name in seen:
                raise ValueError(f"duplicate aggregate output name '{spec.output_name}'")
            seen.add(spec.output_name)
        return v

    @field_validator("mappings", mode="before")
    @classmethod
    def mapping_sources(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        normalised = {}
        for target, source in v.items():
            if isinstance(source, (list, tuple)) and len(source) == 3 and source[1] == "add_days":
                source = {"field": source[0], "add_days": source[2]}
            normalised[target] = _coerce_path(source)
        return normalised

    @field_validator("mappings")
    @classmethod
    def mapping_sources_not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        for target, source in v.items():
            if not target:
                raise ValueError("mapping target must be non-empty")
            if not isinstance(source, DerivedDate):
                _check_path(source)
        return v

    @field_validator("sort_by", mode="before")
    @classmethod
    def sort_from_tuple(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"field": v}
        if isinstance(v, (list, tuple)) and len(v) == 2:
            return {"field": v[0], "direction": v[1]}
        return v

    # ── Derived views ───────────────────────────────────

    @property
    def calendar_grouping(self) -> tuple[FieldRef, DatePeriod] | None:
        """``(field, period)`` when ``group_by`` is a calendar grouping."""
        return calendar_grouping(self.group_by)

    @property
    def aggregate_names(self) -> set[str]:
        return {a.output_name for a in self.aggregates}


_PERIOD_VALUES = {p.value for p in DatePeriod}


def calendar_grouping(group_by: Any) -> tuple[FieldRef, DatePeriod] | None:
    """Detect a ``(field, period)`` pair.

    Takes precedence over relationship paths: ``("created_at", "month")`` is
    always a calendar grouping, never a traversal into ``created_at.month``.
    """
    if isinstance(group_by, tuple) and len(group_by) == 2 and group_by[1] in _PERIOD_VALUES:
        return group_by[0], DatePeriod(group_by[1])
    return None
