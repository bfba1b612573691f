"""
Integration tests -- chart service end-to-end with a fake renderer.

Covers: raw records → transform → cache key → render → compressed cache →
cached hit, plus the failure paths a caller can observe.
"""
from __future__ import annotations

import os

import pytest

from chartflow.cache.store import CacheConfig, CacheErrorCode, ChartCache
from chartflow.charts.service import ChartKind, ChartResult, ChartService
from chartflow.core import telemetry
from chartflow.pipeline.loader import load_transform_catalog
from chartflow.pipeline.spec import Transform


class FakeRenderer:
    """Renders rows into a deterministic SVG string and counts calls."""

    def __init__(self, repeat: int = 1):
        self.calls = 0
        self.repeat = repeat

    def __call__(self, kind, rows, config):
        self.calls += 1
        body = "".join(
            f"<rect data-category='{r.get('category')}' data-value='{r.get('value')}'/>" for r in rows
        )
        return f"<svg kind='{kind.value}' width='{config.get('width', 0)}'>{body * self.repeat}</svg>"


CUSTOMERS = [
    {"status": "active", "id": 1},
    {"status": "active", "id": 2},
    {"status": "inactive", "id": 3},
]

STATUS_TRANSFORM = Transform(
    group_by="status",
    aggregates=[("count", "total")],
    mappings={"category": "group_key", "value": "total"},
)


@pytest.fixture
def cache():
    return ChartCache(CacheConfig(max_entries=50))


# ── Happy path ───────────────────────────────────────────

def test_generate_then_cached_hit(cache):
    renderer = FakeRenderer()
    service = ChartService(cache, renderer)

    first = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM, {"width": 400})
    assert isinstance(first, ChartResult)
    assert first.success
    assert not first.cached
    assert sorted(first.rows, key=lambda r: r["category"]) == [
        {"category": "active", "value": 2},
        {"category": "inactive", "value": 1},
    ]

    second = service.generate(ChartKind.BAR, CUSTOMERS, STATUS_TRANSFORM, {"width": 400})
    assert second.cached
    assert second.artifact == first.artifact
    assert second.cache_key == first.cache_key
    assert renderer.calls == 1


def test_different_config_renders_again(cache):
    renderer = FakeRenderer()
    service = ChartService(cache, renderer)
    a = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM, {"width": 400})
    b = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM, {"width": 800})
    assert a.cache_key != b.cache_key
    assert renderer.calls == 2


def test_large_artifact_stored_compressed(cache):
    service = ChartService(cache, FakeRenderer(repeat=400))
    result = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    assert len(result.artifact) > 10_000
    assert cache.get(result.cache_key).error is CacheErrorCode.COMPRESSED_DATA
    assert cache.get_decompressed(result.cache_key).value == result.artifact
    assert cache.stats()["compressed_count"] == 1

    again = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    assert again.cached
    assert again.artifact == result.artifact


def test_catalog_transform_with_relationships(cache):
    catalog = load_transform_catalog()
    orders = [
        {"amount": 100, "status": "completed", "product": {"category": {"name": "Books"}}},
        {"amount": 60, "status": "shipped", "product": {"category": {"name": "Games"}}},
        {"amount": 30, "status": "completed", "product": {"category": {"name": "Books"}}},
        {"amount": 500, "status": "cancelled", "product": {"category": {"name": "Games"}}},
    ]
    transform = catalog.get("revenue_by_category")
    service = ChartService(cache, FakeRenderer())

    assert service.preload_hint(transform) == ["product", "product.category"]
    result = service.generate("pie", orders, transform)
    assert result.success
    assert result.preload == ["product", "product.category"]
    assert result.rows == [
        {"category": "Books", "value": 130, "average": 65.0},
        {"category": "Games", "value": 60, "average": 60.0},
    ]


def test_dict_transform_accepted(cache):
    service = ChartService(cache, FakeRenderer())
    result = service.generate(
        "bar",
        CUSTOMERS,
        {"group_by": "status", "aggregates": [{"type": "count", "output_name": "value"}],
         "mappings": {"category": "group_key", "value": "value"}},
    )
    assert result.success
    assert len(result.rows) == 2
    assert result.preload == []


def test_dict_transform_gets_preload_hint(cache):
    orders = [
        {"amount": 10, "product": {"category": {"name": "Books"}}},
        {"amount": 5, "product": {"category": {"name": "Games"}}},
    ]
    service = ChartService(cache, FakeRenderer())
    result = service.generate(
        "bar",
        orders,
        {"group_by": "product.category.name",
         "aggregates": [{"type": "sum", "field": "amount", "output_name": "value"}]},
    )
    assert result.success
    assert result.preload == ["product", "product.category"]


# ── Failure paths ────────────────────────────────────────

def test_invalid_transform_is_reported(cache):
    renderer = FakeRenderer()
    service = ChartService(cache, renderer)
    result = service.generate("bar", CUSTOMERS, {"limit": -5})
    assert not result.success
    assert result.error.startswith("invalid_transform")
    assert renderer.calls == 0


def test_insufficient_data(cache):
    service = ChartService(cache, FakeRenderer())
    result = service.generate("line", CUSTOMERS, STATUS_TRANSFORM, {"min_data_points": 3})
    assert result.error.startswith("insufficient_data")
    assert len(result.rows) == 2


def test_renderer_failure_not_cached(cache):
    def broken(kind, rows, config):
        raise RuntimeError("backend offline")

    service = ChartService(cache, broken)
    result = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    assert result.error == "render_failed: backend offline"
    assert len(cache) == 0


def test_oversize_artifact_returned_but_not_cached():
    cache = ChartCache(CacheConfig(max_decompressed_output_bytes=5_000))
    service = ChartService(cache, FakeRenderer(repeat=400))
    result = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    assert result.success
    assert len(cache) == 0


def test_incompressible_artifact_rendered_each_time_but_never_cached():
    cache = ChartCache(CacheConfig(max_compressed_input_bytes=1_000))
    renderer = FakeRenderer()

    def noisy(kind, rows, config):
        return renderer(kind, rows, config).encode() + os.urandom(20_000)

    service = ChartService(cache, noisy)
    first = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    second = service.generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    assert first.success and second.success
    assert not second.cached
    assert len(cache) == 0
    assert renderer.calls == 2


def test_unknown_chart_kind(cache):
    service = ChartService(cache, FakeRenderer())
    with pytest.raises(ValueError):
        service.generate("donut", CUSTOMERS)


# ── Telemetry ────────────────────────────────────────────

def test_generate_emits_events(cache):
    events = []

    def handler(event, measurements, metadata):
        events.append(event)

    telemetry.attach("*", handler)
    try:
        ChartService(cache, FakeRenderer()).generate("bar", CUSTOMERS, STATUS_TRANSFORM)
    finally:
        telemetry.detach("*", handler)

    assert events[0] == "chart.generate.start"
    assert events[-1] == "chart.generate.stop"
    assert "transform.stop" in events
    assert "cache.miss" in events
    assert "cache.put" in events
