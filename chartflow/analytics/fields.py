"""
Field access on heterogeneous records.

A record is either a mapping (``dict`` rows from a query layer, JSON payloads)
or a plain object whose fields are attributes (ORM rows, dataclasses).
Fields are addressed by name, by a dotted path (``"product.category.name"``)
or by a tuple of path segments (``("product", "category", "name")``).
Missing keys and missing intermediate links resolve to ``None``; nothing in
this module raises for absent data.
"""
from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from enum import Enum
from typing import Any, Sequence

FieldRef = str | tuple[str, ...] | list[str]

_MISSING = object()


def field_path(field: Any) -> tuple[str, ...]:
    """Normalise a field reference into its path segments."""
    if isinstance(field, (tuple, list)):
        return tuple(str(p) for p in field)
    if isinstance(field, Enum):
        field = field.value
    return tuple(str(field).split("."))


def _lookup(record: Any, name: Any) -> Any:
    if record is None:
        return _MISSING
    if isinstance(record, Mapping):
        if name in record:
            return record[name]
        if isinstance(name, Enum) and name.value in record:
            return record[name.value]
        return _MISSING
    attr = name.value if isinstance(name, Enum) else name
    if isinstance(attr, str):
        return getattr(record, attr, _MISSING)
    return _MISSING


def get_nested_value(record: Any, path: Sequence[str]) -> Any:
    """Walk *path* through nested records, returning None on any broken link."""
    current = record
    for segment in path:
        current = _lookup(current, segment)
        if current is _MISSING or current is None:
            return None
    return current


def get_field(record: Any, field: Any) -> Any:
    """Return the value of *field* in *record*, or None.

    An exact key match wins over dotted-path traversal, so a flat row with a
    literal ``"product.name"`` column is read directly.
    """
    if field is None:
        return None
    if isinstance(field, (tuple, list)):
        return get_nested_value(record, field)
    value = _lookup(record, field)
    if value is not _MISSING:
        return value
    if isinstance(field, str) and "." in field:
        return get_nested_value(record, field.split("."))
    return None


def to_number(value: Any) -> int | float | None:
    """Coerce a field value to a native number for folding.

    Decimals become floats; booleans and non-numeric values yield None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    return None


def numeric_values(data: Any, field: Any) -> list[int | float]:
    """Non-null numeric values of *field* across *data*, in input order."""
    values: list[int | float] = []
    for record in data:
        number = to_number(get_field(record, field))
        if number is not None:
            values.append(number)
    return values


def hashable_key(value: Any) -> Any:
    """Map a group value onto something usable as a dict key."""
    if isinstance(value, Mapping):
        return ("__map__",) + tuple(sorted((str(k), hashable_key(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return ("__seq__",) + tuple(hashable_key(v) for v in value)
    if isinstance(value, set):
        return ("__set__",) + tuple(sorted(repr(v) for v in value))
    # True, 1 and 1.0 compare equal but are separate groups
    if isinstance(value, (bool, int, float, Decimal)):
        return (type(value).__name__, value)
    try:
        hash(value)
    except TypeError:
        return ("__repr__", repr(value))
    return value


def sort_key(value: Any) -> tuple[bool, str, Any]:
    """Ascending sort key tolerant of mixed types.

    Numbers sort together, other values are grouped by type name, and None
    comes after everything.
    """
    if value is None:
        return (True, "", 0)
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return (False, "", value)
    return (False, type(value).__name__, value)
