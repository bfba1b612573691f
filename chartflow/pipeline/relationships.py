"""
Static relationship analysis for transforms.

Walks a ``Transform`` without executing it and lists the relationship paths
that the query layer should eager-load so the pipeline never triggers a
per-record lookup.  A field path ``product.category.name`` needs the
relationships ``product`` and ``product.category``; the last segment is a
plain attribute.

Calendar groupings such as ``("created_at", "month")`` address a field and
contribute nothing.
"""
from __future__ import annotations

from typing import Any

from chartflow.analytics.fields import field_path
from chartflow.pipeline.spec import GROUP_KEY, DerivedDate, Transform, calendar_grouping


def relationship_prefixes(field: Any) -> list[str]:
    """``"a.b.c"`` -> ``["a", "a.b"]``; a bare field yields nothing."""
    path = field_path(field)
    return [".".join(path[:depth]) for depth in range(1, len(path))]


def _referenced_paths(transform: Transform) -> list[Any]:
    refs: list[Any] = []

    if transform.group_by is not None and calendar_grouping(transform.group_by) is None:
        refs.append(transform.group_by)

    for agg in transform.aggregates:
        if agg.field is not None:
            refs.append(agg.field)

    for source in transform.mappings.values():
        if isinstance(source, DerivedDate):
            refs.append(source.field)
        elif source != GROUP_KEY and source not in transform.aggregate_names:
            refs.append(source)

    return refs


def detect_relationships(transform: Transform | None) -> list[str]:
    """Minimal ordered list of relationship paths to preload.

    Paths are de-duplicated and ordered by depth (shallowest first), ties
    keeping the order in which the transform references them: group_by,
    aggregates, then mappings.
    """
    if transform is None:
        return []
    seen: dict[str, int] = {}
    for ref in _referenced_paths(transform):
        for prefix in relationship_prefixes(ref):
            if prefix not in seen:
                seen[prefix] = len(seen)
    return sorted(seen, key=lambda p: (p.count("."), seen[p]))
