"""
Transform pipeline -- turns raw records into chart-ready rows.

Stages, always in this order:

  1. filter     keep records matching every FilterSpec
  2. group      partition by field, relationship path or calendar period
  3. aggregate  evaluate every AggregateSpec per group (or pass records through)
  4. map        shape each row into the chart's output fields
  5. sort       optional, by one output field, stable
  6. limit      optional, first N rows

Each stage is a pure function of the previous stage's output; input records
are never mutated.  Any unexpected error inside a stage is caught here and
reported as one ``TransformResult`` failure naming the stage, so a caller
never receives a partially transformed collection.
"""
from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta
from typing import Any, Iterable

from chartflow.analytics import aggregator
from chartflow.analytics.fields import get_field, hashable_key
from chartflow.analytics.time_series import BucketKind, bucket_start, coerce_datetime
from chartflow.core import telemetry
from chartflow.core.errors import SpecificationError
from chartflow.core.logging import get_logger
from chartflow.core.utils import elapsed_ms
from chartflow.pipeline.spec import (
    GROUP_KEY,
    AggregateSpec,
    DatePeriod,
    DerivedDate,
    FilterSpec,
    SortDirection,
    SortSpec,
    Transform,
)
from chartflow.pipeline.validator import build_transform

logger = get_logger(__name__)

TRANSFORM_FAILED = "transform_failed"
INVALID_TRANSFORM = "invalid_transform"

# Mapping targets that chart time axes expect as datetimes
_TIME_AXIS_FIELDS = {"start_time", "end_time"}


# ── Results ─────────────────────────────────────────────


@dataclass(frozen=True)
class TransformFailure:
    kind: str
    message: str
    stage: str | None = None

    def __str__(self) -> str:
        where = f" during {self.stage}" if self.stage else ""
        return f"{self.kind}{where}: {self.message}"


@dataclass
class TransformResult:
    """Either the chart-ready rows or a single failure."""
    records: list[Any] = field(default_factory=list)
    error: TransformFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Row:
    """Intermediate row between aggregation and mapping."""
    group_key: Any
    values: dict[str, Any]
    source: Any = None


# ── Stage 1: filter ─────────────────────────────────────


def apply_filters(records: list[Any], filters: Iterable[FilterSpec]) -> list[Any]:
    filters = list(filters)
    if not filters:
        return records
    return [r for r in records if all(f.matches(get_field(r, f.field)) for f in filters)]


# ── Stage 2: group ──────────────────────────────────────


def date_period_key(value: Any, period: DatePeriod) -> Any:
    """Calendar group key: year -> 2024, month -> "2024-03", day -> "2024-03-07",
    hour -> "2024-03-07 14:00".  Unparseable values -> None."""
    if coerce_datetime(value) is None:
        return None
    if period is DatePeriod.HOUR:
        return bucket_start(value, BucketKind.HOUR).strftime("%Y-%m-%d %H:00")
    day = bucket_start(value, BucketKind.DAY)
    if period is DatePeriod.YEAR:
        return day.year
    if period is DatePeriod.MONTH:
        return f"{day.year}-{day.month:02d}"
    return day.isoformat()


def apply_grouping(records: list[Any], transform: Transform) -> list[tuple[Any, list[Any]]]:
    if transform.group_by is None:
        return [(None, records)]

    calendar = transform.calendar_grouping
    if calendar is not None:
        date_field, period = calendar

        def key_of(record: Any) -> Any:
            return date_period_key(get_field(record, date_field), period)
    else:
        group_field = transform.group_by

        def key_of(record: Any) -> Any:
            return get_field(record, group_field)

    groups: dict[Any, tuple[Any, list[Any]]] = {}
    for record in records:
        key = key_of(record)
        groups.setdefault(hashable_key(key), (key, []))[1].append(record)
    return list(groups.values())


# ── Stage 3: aggregate ──────────────────────────────────


def _evaluate(spec: AggregateSpec, records: list[Any]) -> Any:
    return aggregator.apply(spec.type, records, spec.field)


def apply_aggregations(
    groups: list[tuple[Any, list[Any]]],
    aggregates: tuple[AggregateSpec, ...],
) -> list[_Row]:
    if not aggregates:
        return [
            _Row(group_key=key, values={}, source=record)
            for key, records in groups
            for record in records
        ]
    rows = []
    for key, records in groups:
        values = {spec.output_name: _evaluate(spec, records) for spec in aggregates}
        rows.append(_Row(group_key=key, values=values, source=records[0] if records else None))
    return rows


# ── Stage 4: map ────────────────────────────────────────


def add_days(value: Any, days: int) -> datetime | None:
    """Shift a date-like value by whole days; bare dates become midnight datetimes."""
    moment = coerce_datetime(value)
    if moment is None:
        return None
    if not isinstance(moment, datetime):
        return datetime.combine(moment + timedelta(days=days), dt_time())
    return moment + timedelta(days=days)


def resolve_source(row: _Row, source: Any) -> Any:
    """Value of one mapping source for *row*.

    Lookup order for a plain name: the group key alias, aggregate outputs,
    then the group's first source record.  Paths and derived values always
    read the source record.
    """
    if isinstance(source, DerivedDate):
        if row.source is None:
            return None
        return add_days(get_field(row.source, source.field), source.add_days)
    if source == GROUP_KEY:
        return row.group_key
    if isinstance(source, str) and source in row.values:
        return row.values[source]
    if row.source is None:
        return None
    return get_field(row.source, source)


def _for_target(target: str, value: Any) -> Any:
    if target in _TIME_AXIS_FIELDS and isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, dt_time())
    return value


def apply_mappings(rows: list[_Row], transform: Transform) -> list[Any]:
    if not transform.mappings:
        if not transform.aggregates:
            return [dict(r.source) if isinstance(r.source, Mapping) else r.source for r in rows]
        out = []
        for r in rows:
            shaped = {GROUP_KEY: r.group_key} if transform.group_by is not None else {}
            shaped.update(r.values)
            out.append(shaped)
        return out

    return [
        {target: _for_target(target, resolve_source(r, source)) for target, source in transform.mappings.items()}
        for r in rows
    ]


# ── Stage 5 / 6: sort and limit ─────────────────────────


def apply_sorting(rows: list[Any], sort_by: SortSpec | None) -> list[Any]:
    """Stable sort on one field; rows with a null sort value always go last."""
    if sort_by is None:
        return rows
    present = [r for r in rows if get_field(r, sort_by.field) is not None]
    missing = [r for r in rows if get_field(r, sort_by.field) is None]
    present = sorted(
        present,
        key=lambda r: get_field(r, sort_by.field),
        reverse=sort_by.direction is SortDirection.DESC,
    )
    return present + missing


def apply_limit(rows: list[Any], limit: int | None) -> list[Any]:
    return rows if limit is None else rows[:limit]


# ── Entry point ─────────────────────────────────────────


def resolve_transform(transform: Transform | dict[str, Any] | None) -> Transform | None:
    """Validate a dict into a ``Transform``; raises ``SpecificationError``."""
    if transform is None or isinstance(transform, Transform):
        return transform
    if isinstance(transform, dict):
        return build_transform(transform)
    raise SpecificationError([f"Expected Transform, got {type(transform).__name__}"])


def execute(
    records: Iterable[Any],
    transform: Transform | dict[str, Any] | None,
    chart_kind: str | None = None,
) -> TransformResult:
    """Run *transform* over *records*.

    Parameters
    ----------
    records : iterable
        Mappings or attribute objects; never modified.
    transform : Transform, dict or None
        None passes records through unchanged.  A dict is validated first
        and an invalid one yields an ``invalid_transform`` failure.
    chart_kind : str, optional
        Correlation key for telemetry.

    Returns
    -------
    TransformResult
    """
    rows = list(records)
    try:
        transform = resolve_transform(transform)
    except SpecificationError as exc:
        return TransformResult(error=TransformFailure(INVALID_TRANSFORM, str(exc)))
    if transform is None:
        return TransformResult(records=rows)

    if not rows:
        return TransformResult(records=[])

    meta = {"chart_kind": chart_kind}
    telemetry.emit("transform.start", {"record_count": len(rows)}, meta)
    t0 = time.perf_counter()
    stage = "filter"
    try:
        data = apply_filters(rows, transform.filters)
        stage = "group"
        groups = apply_grouping(data, transform)
        stage = "aggregate"
        aggregated = apply_aggregations(groups, transform.aggregates)
        stage = "map"
        mapped = apply_mappings(aggregated, transform)
        stage = "sort"
        ordered = apply_sorting(mapped, transform.sort_by)
        stage = "limit"
        result = apply_limit(ordered, transform.limit)
    except Exception as exc:
        logger.error("Transform execution failed during %s: %s", stage, exc)
        telemetry.emit(
            "transform.exception",
            {"duration_ms": elapsed_ms(t0), "record_count": len(rows)},
            {**meta, "stage": stage, "error": str(exc)},
        )
        return TransformResult(error=TransformFailure(TRANSFORM_FAILED, str(exc) or type(exc).__name__, stage))

    telemetry.emit(
        "transform.stop",
        {"duration_ms": elapsed_ms(t0), "record_count": len(rows), "output_count": len(result)},
        meta,
    )
    return TransformResult(records=result)
