"""
Content-addressed cache keys for rendered charts.

A key is the SHA-256 of a canonical JSON encoding of
``(chart kind, input records, configuration)``, truncated to 32 hex
characters.  Mapping keys are sorted, so two requests that differ only in
field order collide on purpose.
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

KEY_LENGTH = 32


def _canonical(value: Any) -> Any:
    """JSON-encodable form of values ``json`` cannot handle natively."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    # Tagged so that Decimal("1") and the string "1" hash differently
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    if isinstance(value, (datetime, date, time)):
        return {"__" + type(value).__name__ + "__": value.isoformat()}
    if isinstance(value, (set, frozenset)):
        return sorted((_canonical(v) for v in value), key=repr)
    if isinstance(value, bytes):
        return {"__bytes__": value.hex()}
    if hasattr(value, "__dict__"):
        return {k: v for k, v in vars(value).items() if not k.startswith("_")}
    raise TypeError(f"Cannot build a cache key from {type(value).__name__}")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_canonical)


def generate_cache_key(chart_kind: Any, data: Any, config: Any = None) -> str:
    """Deterministic 32-character key for one chart request."""
    raw = canonical_json([chart_kind, data, config])
    return hashlib.sha256(raw.encode()).hexdigest()[:KEY_LENGTH]
