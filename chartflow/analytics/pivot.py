"""
Pivot tables and reshaping for heatmaps, grouped and cross-tab charts.

  - pivot              long format -> wide format (one column per distinct value)
  - group_by_multiple  one flat row per key tuple
  - transpose          swap the row identifier and the column set
  - to_heatmap_format  wide format -> ``{x, y, value}`` cells
  - flatten            nested ``{key: {key: value}}`` groups -> flat rows
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterable, Sequence

from chartflow.analytics import aggregator
from chartflow.analytics.aggregator import AggregateKind
from chartflow.analytics.fields import get_field, hashable_key, sort_key
from chartflow.core.errors import PivotShapeError

DEFAULT_LEVEL_NAMES = ("level1", "level2", "level3", "level4", "level5")


def _field_name(field: Any) -> str:
    return field if isinstance(field, str) else ".".join(field)


def _column_id(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return hashable_key(value)
    return value


def _group(data: Iterable[Any], fields: Sequence[Any]) -> dict[Any, tuple[tuple, list[Any]]]:
    groups: dict[Any, tuple[tuple, list[Any]]] = {}
    for record in data:
        key = tuple(get_field(record, f) for f in fields)
        groups.setdefault(hashable_key(key), (key, []))[1].append(record)
    return groups


def pivot(
    data: Iterable[Any],
    rows: Any,
    columns: Any,
    values: Any,
    aggregation: AggregateKind | str = AggregateKind.SUM,
    fill_value: Any = None,
) -> list[dict[Any, Any]]:
    """Build a pivot table.

    Parameters
    ----------
    rows : str or list[str]
        Field(s) identifying a pivot row.
    columns : str
        Field whose distinct non-null values become columns (sorted).
    values : str
        Field aggregated in every cell.
    aggregation : AggregateKind
        Aggregation applied to the records of a cell.
    fill_value
        Cell value when no record matches a row/column pair.

    Returns
    -------
    list[dict]
        One dict per row: the row fields plus one key per column value.
    """
    records = list(data)
    row_fields = [rows] if isinstance(rows, str) else list(rows)
    kind = AggregateKind(aggregation)

    # Column values become row dict keys, so they are distinct by equality
    distinct: dict[Any, Any] = {}
    for record in records:
        value = get_field(record, columns)
        if value is not None:
            distinct.setdefault(_column_id(value), value)
    column_values = sorted(distinct.values(), key=sort_key)

    table = []
    for row_key, row_records in _group(records, row_fields).values():
        row: dict[Any, Any] = {_field_name(f): v for f, v in zip(row_fields, row_key)}
        for col in column_values:
            cell = [r for r in row_records if get_field(r, columns) == col]
            row[col] = aggregator.apply(kind, cell, values) if cell else fill_value
        table.append(row)
    return table


def group_by_multiple(
    data: Iterable[Any],
    fields: Sequence[Any],
    value_field: Any,
    aggregation: AggregateKind | str,
) -> list[dict[str, Any]]:
    """Group by several fields; one row per key tuple, sorted by the tuple."""
    kind = AggregateKind(aggregation)
    names = [_field_name(f) for f in fields]
    result = []
    for key, records in _group(data, fields).values():
        row: dict[str, Any] = dict(zip(names, key))
        row["value"] = aggregator.apply(kind, records, value_field)
        result.append(row)
    return sorted(result, key=lambda r: tuple(sort_key(r[n]) for n in names))


def transpose(pivot_table: Sequence[Mapping[Any, Any]], row_field: str) -> list[dict[Any, Any]]:
    """Swap rows and columns of a pivot table.

    Each former column becomes a row keyed by *row_field*; each former row
    identifier becomes a column.  An empty table transposes to an empty
    table; a table whose rows carry different column sets raises
    ``PivotShapeError``.
    """
    if not pivot_table:
        return []
    first = pivot_table[0]
    column_names = [k for k in first if k != row_field]
    expected = set(first)
    for index, row in enumerate(pivot_table):
        if row_field not in row:
            raise PivotShapeError(f"Row {index} has no '{row_field}' field")
        if set(row) != expected:
            raise PivotShapeError(
                f"Row {index} columns differ from row 0; pivot table must be rectangular"
            )

    transposed = []
    for col in column_names:
        new_row: dict[Any, Any] = {row_field: col}
        for row in pivot_table:
            new_row[row[row_field]] = row[col]
        transposed.append(new_row)
    return transposed


def to_heatmap_format(
    pivot_table: Iterable[Mapping[Any, Any]],
    row_field: str | None = None,
    exclude_fields: Sequence[Any] = (),
) -> list[dict[str, Any]]:
    """Flatten a pivot table into ``{"x": column, "y": row, "value": v}`` cells.

    The row identifier defaults to the first non-excluded key of each row.
    Missing cell values become 0.
    """
    cells = []
    excluded = set(exclude_fields)
    for row in pivot_table:
        row_id = row_field
        if row_id is None:
            row_id = next((k for k in row if k not in excluded), None)
        y = row.get(row_id)
        for col, value in row.items():
            if col == row_id or col in excluded:
                continue
            cells.append({"x": col, "y": y, "value": 0 if value is None else value})
    return cells


def flatten(
    nested: Mapping[Any, Any],
    field_names: Sequence[str] = DEFAULT_LEVEL_NAMES,
) -> list[dict[str, Any]]:
    """Flatten nested group mappings into one record per leaf.

    ``{"North": {"Q1": 100}}`` becomes ``[{"level1": "North", "level2": "Q1",
    "value": 100}]``.  Recursion stops at ``len(field_names)`` levels; a
    mapping found at that depth is kept as the leaf value.
    """
    max_depth = len(field_names)
    if max_depth == 0:
        raise ValueError("flatten needs at least one level name")

    def _walk(node: Mapping[Any, Any], prefix: tuple) -> list[dict[str, Any]]:
        out = []
        for key, value in node.items():
            path = prefix + (key,)
            if isinstance(value, Mapping) and len(path) < max_depth:
                out.extend(_walk(value, path))
            else:
                record: dict[str, Any] = dict(zip(field_names, path))
                record["value"] = value
                out.append(record)
        return out

    return _walk(nested, ())
