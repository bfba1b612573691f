"""
Chart service -- orchestrates transform -> cache lookup -> render -> store.

The drawing backend is injected as a ``Renderer``: any callable taking
``(kind, rows, config)`` and returning the artifact as bytes or text (SVG).
The service never draws anything itself.

Flow for ``generate``:
  1. Run the transform over the raw records (pure, cheap)
  2. Check the minimum number of data points requested by the config
  3. Key = hash(kind, chart-ready rows, config); serve a cache hit if present
  4. Otherwise render, then store with ``put_compressed``; a codec failure
     falls back to an uncompressed ``put``, an oversize artifact is returned
     but not cached
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Iterable, Protocol

from pydantic import BaseModel

from chartflow.cache.keys import generate_cache_key
from chartflow.cache.store import CacheErrorCode, ChartCache
from chartflow.core import telemetry
from chartflow.core.errors import SpecificationError
from chartflow.core.logging import get_logger
from chartflow.pipeline import transform as pipeline
from chartflow.pipeline.relationships import detect_relationships
from chartflow.pipeline.spec import Transform

logger = get_logger(__name__)


class ChartKind(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"
    AREA = "area"
    SCATTER = "scatter"
    GANTT = "gantt"
    SPARKLINE = "sparkline"


class Renderer(Protocol):
    def __call__(self, kind: ChartKind, rows: list[Any], config: dict[str, Any]) -> bytes | str: ...


class ChartResult:
    def __init__(
        self,
        kind: ChartKind,
        artifact: bytes | str | None = None,
        rows: list[Any] | None = None,
        cache_key: str | None = None,
        cached: bool = False,
        error: str | None = None,
        latency_ms: int = 0,
        preload: list[str] | None = None,
    ):
        self.kind = kind
        self.artifact = artifact
        self.rows = rows or []
        self.cache_key = cache_key
        self.cached = cached
        self.error = error
        self.latency_ms = latency_ms
        self.preload = preload or []

    @property
    def success(self) -> bool:
        return self.error is None and self.artifact is not None


def _config_dict(config: dict[str, Any] | BaseModel | None) -> dict[str, Any]:
    if config is None:
        return {}
    if isinstance(config, BaseModel):
        return config.model_dump()
    return dict(config)


class ChartService:
    """Generates chart artifacts with transform, render and cache wired together.

    Parameters
    ----------
    cache : ChartCache
        Injected cache; the service does not start or stop it.
    renderer : Renderer
        Drawing backend.
    """

    def __init__(self, cache: ChartCache, renderer: Renderer):
        self.cache = cache
        self.renderer = renderer

    def preload_hint(self, transform: Transform | None) -> list[str]:
        """Relationship paths the query layer should eager-load for *transform*."""
        return detect_relationships(transform)

    def generate(
        self,
        kind: ChartKind | str,
        records: Iterable[Any],
        transform: Transform | dict[str, Any] | None = None,
        config: dict[str, Any] | BaseModel | None = None,
    ) -> ChartResult:
        """Raw records -> chart artifact, served from cache when possible."""
        t0 = time.perf_counter()
        kind = ChartKind(kind)
        cfg = _config_dict(config)
        records = list(records)
        meta = {"chart_kind": kind.value}

        def latency() -> int:
            return int((time.perf_counter() - t0) * 1000)

        def finish(result: ChartResult) -> ChartResult:
            result.latency_ms = latency()
            telemetry.emit(
                "chart.generate.stop",
                {"duration_ms": result.latency_ms, "row_count": len(result.rows)},
                {**meta, "cached": result.cached, "error": result.error, "key": result.cache_key},
            )
            return result

        telemetry.emit("chart.generate.start", {"record_count": len(records)}, meta)
        logger.info("ChartService.generate | kind=%s | records=%d", kind.value, len(records))

        try:
            transform = pipeline.resolve_transform(transform)
        except SpecificationError as exc:
            failure = pipeline.TransformFailure(pipeline.INVALID_TRANSFORM, str(exc))
            return finish(ChartResult(kind, error=str(failure)))
        preload = detect_relationships(transform)

        # 1. Transform
        outcome = pipeline.execute(records, transform, chart_kind=kind.value)
        if not outcome.ok:
            return finish(ChartResult(kind, error=str(outcome.error), preload=preload))
        rows = outcome.records

        # 2. Minimum data points
        min_points = cfg.get("min_data_points")
        if min_points is not None and len(rows) < min_points:
            return finish(ChartResult(
                kind,
                rows=rows,
                preload=preload,
                error=f"insufficient_data: chart requires at least {min_points} data points, got {len(rows)}",
            ))

        # 3. Cache lookup
        try:
            key = generate_cache_key(kind, rows, cfg)
        except TypeError as exc:
            logger.warning("Rows are not hashable into a cache key (%s) -- rendering uncached", exc)
            key = None

        if key is not None:
            hit = self.cache.get_decompressed(key)
            if hit.ok:
                logger.info("Cache HIT for chart kind=%s key=%s", kind.value, key[:16])
                return finish(ChartResult(kind, artifact=hit.value, rows=rows, cache_key=key,
                                          cached=True, preload=preload))
            if hit.error is not CacheErrorCode.NOT_FOUND:
                logger.warning("Unreadable cache entry %s (%s) -- re-rendering", key[:16], hit.error.value)
                self.cache.delete(key)

        # 4. Render
        try:
            artifact = self.renderer(kind, rows, cfg)
        except Exception as exc:
            logger.exception("Chart rendering failed for kind=%s", kind.value)
            return finish(ChartResult(kind, rows=rows, cache_key=key, preload=preload,
                                      error=f"render_failed: {exc}"))

        # 5. Store
        if key is not None:
            self._store(key, artifact)

        return finish(ChartResult(kind, artifact=artifact, rows=rows, cache_key=key, preload=preload))

    def _store(self, key: str, artifact: bytes | str) -> None:
        stored = self.cache.put_compressed(key, artifact)
        if stored.ok:
            return
        if stored.error is CacheErrorCode.COMPRESSION_FAILED:
            logger.warning("Compression failed for %s -- caching uncompressed", key[:16])
            self.cache.put(key, artifact)
        else:
            logger.warning("Artifact for %s not cached: %s", key[:16], stored.message)
