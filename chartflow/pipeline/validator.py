"""
Validates transform specifications supplied as plain dicts (YAML, JSON,
report definitions) before any record is touched.

Checks performed:
  1. Structural validation by the ``Transform`` model (types, required
     fields, non-null filter values, positive limit, unique output names)
  2. Non-count aggregates name a field
  3. A ``group_key`` mapping only appears when ``group_by`` is set
  4. ``sort_by`` names a field that exists in the output rows
"""
from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from chartflow.core.errors import SpecificationError
from chartflow.pipeline.spec import GROUP_KEY, Transform


def _format_errors(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "transform"
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        messages.append(f"{loc}: {msg}")
    return messages


def _semantic_errors(transform: Transform) -> list[str]:
    errors: list[str] = []

    for target, source in transform.mappings.items():
        if source == GROUP_KEY and transform.group_by is None:
            errors.append(
                f"Mapping '{target}' uses '{GROUP_KEY}' but the transform has no group_by."
            )

    if transform.sort_by is not None:
        sort_field = transform.sort_by.field
        if transform.mappings:
            available = set(transform.mappings)
        elif transform.aggregates:
            available = transform.aggregate_names | ({GROUP_KEY} if transform.group_by else set())
        else:
            available = None  # rows are the source records; any field may exist
        if available is not None and sort_field not in available:
            errors.append(
                f"sort_by field '{sort_field}' is not an output field. "
                f"Allowed: {', '.join(sorted(available))}"
            )

    return errors


def validate_transform(spec: dict[str, Any] | Transform) -> list[str]:
    """Return a list of validation error messages (empty list = spec is valid).

    Parameters
    ----------
    spec : dict or Transform
        Keys: filters, group_by, aggregates, mappings, sort_by, limit.
    """
    if isinstance(spec, Transform):
        return _semantic_errors(spec)
    if not isinstance(spec, dict):
        return [f"Transform spec must be a mapping, got {type(spec).__name__}"]

    try:
        transform = Transform.model_validate(spec)
    except ValidationError as exc:
        return _format_errors(exc)
    return _semantic_errors(transform)


def build_transform(spec: dict[str, Any], name: str | None = None) -> Transform:
    """Validate *spec* and return the ``Transform``.

    Raises ``SpecificationError`` carrying every problem found.
    """
    try:
        transform = Transform.model_validate(spec)
    except ValidationError as exc:
        raise SpecificationError(_format_errors(exc), name=name) from exc
    errors = _semantic_errors(transform)
    if errors:
        raise SpecificationError(errors, name=name)
    return transform


def describe(transform: Transform) -> dict[str, Any]:
    """Plain-dict view of a transform (for logs and cache keys)."""
    return transform.model_dump(mode="json")
