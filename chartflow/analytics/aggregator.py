"""
Aggregation functions for chart data.

Each function folds one field across a collection of records:

  - sum    fold from 0, skipping nulls and non-numeric values
  - count  number of records whose field is non-null
  - avg    sum / count over numeric values, 0.0 when there are none
  - min    smallest numeric value, None when there are none
  - max    largest numeric value, None when there are none

Decimal values are converted to floats before they are combined with native
numbers, so a fold over mixed representations never raises.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Iterable

from chartflow.analytics.fields import get_field, hashable_key, sort_key, to_number


class AggregateKind(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


Number = int | float


def sum(data: Iterable[Any], field: Any) -> Number:  # noqa: A001
    total: Number = 0
    for record in data:
        value = to_number(get_field(record, field))
        if value is not None:
            total += value
    return total


def count(data: Iterable[Any], field: Any = None) -> int:
    """Count records with a non-null *field*; with no field, count records."""
    if field is None:
        return len(list(data))
    return len([r for r in data if get_field(r, field) is not None])


def avg(data: Iterable[Any], field: Any) -> float:
    total: Number = 0
    n = 0
    for record in data:
        value = to_number(get_field(record, field))
        if value is not None:
            total += value
            n += 1
    return total / n if n else 0.0


def field_min(data: Iterable[Any], field: Any) -> Number | None:
    result: Number | None = None
    for record in data:
        value = to_number(get_field(record, field))
        if value is not None and (result is None or value < result):
            result = value
    return result


def field_max(data: Iterable[Any], field: Any) -> Number | None:
    result: Number | None = None
    for record in data:
        value = to_number(get_field(record, field))
        if value is not None and (result is None or value > result):
            result = value
    return result


_DISPATCH: dict[AggregateKind, Callable[[Iterable[Any], Any], Any]] = {
    AggregateKind.COUNT: count,
    AggregateKind.SUM: sum,
    AggregateKind.AVG: avg,
    AggregateKind.MIN: field_min,
    AggregateKind.MAX: field_max,
}


def apply(kind: AggregateKind | str, data: Iterable[Any], field: Any) -> Any:
    """Dispatch to the aggregation named by *kind*.

    Raises ``ValueError`` for an unknown kind.
    """
    return _DISPATCH[AggregateKind(kind)](data, field)


def aggregate(data: Iterable[Any], specs: Iterable[tuple[str, Any, AggregateKind | str]]) -> dict[str, Any]:
    """Apply several aggregations to the same data.

    Parameters
    ----------
    data : iterable
        Records; materialised once so generators are safe.
    specs : iterable of (output_key, field, kind)

    Returns
    -------
    dict
        ``output_key -> aggregated value``
    """
    rows = list(data)
    return {output_key: apply(kind, rows, field) for output_key, field, kind in specs}


def group_by(
    data: Iterable[Any],
    group_field: Any,
    value_field: Any,
    kind: AggregateKind | str,
) -> list[dict[str, Any]]:
    """Group by *group_field* and aggregate *value_field* per group.

    Returns ``[{group_field: key, "value": aggregated}, ...]`` sorted by key.
    The output key is the field reference as a string; user-supplied field
    names are never converted to any other key type.
    """
    groups: dict[Any, tuple[Any, list[Any]]] = {}
    for record in data:
        key = get_field(record, group_field)
        groups.setdefault(hashable_key(key), (key, []))[1].append(record)

    name = group_field if isinstance(group_field, str) else ".".join(group_field)
    rows = [
        {name: key, "value": apply(kind, records, value_field)}
        for key, records in groups.values()
    ]
    return sorted(rows, key=lambda r: sort_key(r[name]))


def custom(data: Iterable[Any], field: Any, initial: Any, fun: Callable[[Any, Any], Any]) -> Any:
    """Fold ``fun(value, acc)`` over the non-null values of *field*."""
    acc = initial
    for record in data:
        value = get_field(record, field)
        if value is not None:
            acc = fun(value, acc)
    return acc
