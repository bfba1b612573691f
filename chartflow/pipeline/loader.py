"""
Loads, validates and caches a catalogue of named transforms from YAML.

Document shape::

    version: 1
    transforms:
      customer_status:
        group_by: status
        aggregates:
          - {type: count, output_name: total}
        mappings:
          category: group_key
          value: total

Every transform is validated when the catalogue is loaded; problems in any
entry are reported together in one ``SpecificationError``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from chartflow.core.config import get_settings
from chartflow.core.errors import SpecificationError
from chartflow.core.logging import get_logger
from chartflow.pipeline.spec import Transform
from chartflow.pipeline.validator import build_transform

logger = get_logger(__name__)

_DEFAULT_CATALOG = Path(__file__).resolve().parents[2] / "chart_specs" / "transforms.yml"


@dataclass
class TransformCatalog:
    """Named, validated transforms."""

    version: int
    transforms: dict[str, Transform] = field(default_factory=dict)

    def get(self, name: str) -> Transform | None:
        return self.transforms.get(name)

    def names(self) -> list[str]:
        return list(self.transforms.keys())


def parse_catalog(raw: dict[str, Any] | None) -> TransformCatalog:
    """Build a catalogue from an already-parsed YAML document."""
    raw = raw or {}
    entries = raw.get("transforms") or {}
    if not isinstance(entries, dict):
        raise SpecificationError(["'transforms' must be a mapping of name -> transform"])

    transforms: dict[str, Transform] = {}
    errors: list[str] = []
    for name, spec in entries.items():
        try:
            transforms[name] = build_transform(spec or {}, name=name)
        except SpecificationError as exc:
            errors.extend(f"{name}: {e}" for e in exc.errors)
    if errors:
        raise SpecificationError(errors)

    return TransformCatalog(version=raw.get("version", 1), transforms=transforms)


def load_transform_catalog(path: str | Path | None = None) -> TransformCatalog:
    """Read and validate a catalogue file.

    Falls back to ``Settings.transform_catalog_path`` and then to the
    bundled ``chart_specs/transforms.yml``.
    """
    if path is None:
        path = get_settings().transform_catalog_path or _DEFAULT_CATALOG
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f)
    catalog = parse_catalog(raw)
    logger.debug("Loaded %d transforms from %s", len(catalog.transforms), path)
    return catalog


@lru_cache
def default_catalog() -> TransformCatalog:
    """Load and cache the configured catalogue."""
    return load_transform_catalog()
