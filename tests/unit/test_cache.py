"""
Unit tests -- chart artifact cache.
"""
import dataclasses
import os
import threading
import time

import pytest

from chartflow.cache import compression
from chartflow.cache.store import CacheConfig, CacheEntry, CacheErrorCode, ChartCache
from chartflow.core import telemetry
from chartflow.core.config import Settings

BIG_SVG = "<svg>" + "<circle cx='10' cy='10' r='5'/>" * 600 + "</svg>"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ChartCache(CacheConfig(max_entries=10, shard_count=4), clock=clock)


# ── Basic put / get ──────────────────────────────────────

def test_put_and_get(cache):
    cache.put("k", "<svg/>")
    result = cache.get("k")
    assert result.ok
    assert result.value == "<svg/>"


def test_cache_miss(cache):
    result = cache.get("unknown")
    assert not result.ok
    assert result.error is CacheErrorCode.NOT_FOUND


def test_put_overwrites(cache):
    cache.put("k", "v1")
    cache.put("k", "v2")
    assert cache.get("k").value == "v2"
    assert len(cache) == 1


def test_delete(cache):
    cache.put("k", "v")
    assert cache.delete("k") is True
    assert cache.delete("k") is False
    assert cache.get("k").error is CacheErrorCode.NOT_FOUND


def test_clear(cache):
    cache.put("a", "1")
    cache.put("b", "2")
    assert cache.clear() == 2
    assert len(cache) == 0


# ── Expiry ───────────────────────────────────────────────

def test_zero_ttl_is_a_miss(cache):
    cache.put("k", "v", ttl=0)
    result = cache.get("k")
    assert result.error is CacheErrorCode.NOT_FOUND
    stats = cache.stats()
    assert stats["cache_misses"] == 1
    assert stats["cache_hits"] == 0
    assert stats["total_entries"] == 0


def test_entry_expires_after_ttl(cache, clock):
    cache.put("k", "v", ttl=60)
    clock.advance(59.9)
    assert cache.get("k").ok
    clock.advance(0.1)
    assert not cache.get("k").ok
    assert cache.stats()["expirations"] == 1


def test_default_ttl_from_config(clock):
    cache = ChartCache(CacheConfig(default_ttl_seconds=5), clock=clock)
    cache.put("k", "v")
    clock.advance(5)
    assert not cache.get("k").ok


def test_cleanup_expired(cache, clock):
    cache.put("short", "v", ttl=1)
    cache.put("long", "v", ttl=100)
    clock.advance(2)
    assert cache.stats()["expired_count"] == 1
    assert cache.cleanup_expired() == 1
    assert len(cache) == 1
    assert cache.get("long").ok


# ── Eviction ─────────────────────────────────────────────

def test_eviction_keeps_size_within_capacity(cache, clock):
    for i in range(11):
        cache.put(f"k{i}", "v")
        clock.advance(1)
    assert len(cache) <= 10
    assert not cache.get("k0").ok
    assert cache.get("k10").ok
    assert cache.stats()["evictions"] == 1


def test_eviction_removes_least_recently_accessed(cache, clock):
    for i in range(10):
        cache.put(f"k{i}", "v")
        clock.advance(1)
    # k0 becomes the most recently used
    assert cache.get("k0").ok
    clock.advance(1)
    cache.put("new", "v")
    assert cache.get("k0").ok
    assert not cache.get("k1").ok


def test_eviction_drops_ten_percent(clock):
    cache = ChartCache(CacheConfig(max_entries=100), clock=clock)
    for i in range(100):
        cache.put(f"k{i}", "v")
        clock.advance(1)
    cache.put("extra", "v")
    assert len(cache) == 91
    assert all(not cache.get(f"k{i}").ok for i in range(10))
    assert cache.get("k10").ok


def test_entries_without_access_time_evicted_first(cache, clock):
    for i in range(10):
        cache.put(f"k{i}", "v")
        clock.advance(1)
    shard, lock = cache._shard_for("k9")
    with lock:
        shard["k9"].last_accessed_at = None
    cache.put("new", "v")
    assert not cache.get("k9").ok
    assert cache.get("k0").ok


def test_overwrite_at_capacity_does_not_evict(cache, clock):
    for i in range(10):
        cache.put(f"k{i}", "v")
        clock.advance(1)
    cache.put("k5", "updated")
    assert len(cache) == 10
    assert cache.stats()["evictions"] == 0


# ── Compression ──────────────────────────────────────────

def test_put_compressed_roundtrip(cache):
    result = cache.put_compressed("chart", BIG_SVG)
    assert result.ok
    assert result.metadata["original_size"] == len(BIG_SVG)
    assert result.metadata["compressed_size"] < result.metadata["original_size"]
    restored = cache.get_decompressed("chart")
    assert restored.ok
    assert restored.value == BIG_SVG


def test_put_compressed_keeps_bytes_type(cache):
    payload = BIG_SVG.encode()
    cache.put_compressed("chart", payload)
    assert cache.get_decompressed("chart").value == payload


def test_get_on_compressed_entry_counts_hit(cache):
    cache.put_compressed("chart", BIG_SVG)
    result = cache.get("chart")
    assert result.error is CacheErrorCode.COMPRESSED_DATA
    assert cache.stats()["cache_hits"] == 1


def test_small_payload_stored_uncompressed(cache):
    result = cache.put_compressed("small", "<svg/>")
    assert result.ok
    assert result.metadata["ratio"] == 1.0
    assert cache.get("small").value == "<svg/>"
    assert cache.get_decompressed("small").value == "<svg/>"


def test_custom_threshold(cache):
    cache.put_compressed("k", "<svg>tiny</svg>", threshold=1)
    assert cache.get("k").error is CacheErrorCode.COMPRESSED_DATA


def test_oversized_input_not_stored(clock):
    cache = ChartCache(
        CacheConfig(compression_threshold_bytes=10, max_decompressed_output_bytes=100),
        clock=clock,
    )
    result = cache.put_compressed("k", "x" * 101)
    assert result.error is CacheErrorCode.INPUT_TOO_LARGE
    assert len(cache) == 0


def test_incompressible_payload_over_ceiling_not_stored(clock):
    cache = ChartCache(CacheConfig(max_compressed_input_bytes=1_000), clock=clock)
    result = cache.put_compressed("k", os.urandom(20_000))
    assert result.error is CacheErrorCode.COMPRESSED_DATA_TOO_LARGE
    assert len(cache) == 0
    assert cache.get_decompressed("k").error is CacheErrorCode.NOT_FOUND


def test_decompression_ceiling_is_typed_failure(clock):
    cache = ChartCache(CacheConfig(), clock=clock)
    cache.put_compressed("k", BIG_SVG)
    # Ceiling lowered after the entry was written
    cache.config = dataclasses.replace(cache.config, max_compressed_input_bytes=20)
    result = cache.get_decompressed("k")
    assert result.error is CacheErrorCode.COMPRESSED_DATA_TOO_LARGE


def test_corrupt_entry_decompression_failed(cache):
    cache.put_compressed("k", BIG_SVG)
    shard, lock = cache._shard_for("k")
    with lock:
        shard["k"].payload = b"garbage"
    assert cache.get_decompressed("k").error is CacheErrorCode.DECOMPRESSION_FAILED


# ── Statistics ───────────────────────────────────────────

def test_stats(cache):
    cache.put("plain", "abcd")
    cache.put_compressed("big", BIG_SVG)
    cache.get("plain")
    cache.get("missing")
    stats = cache.stats()
    _, meta = compression.compress(BIG_SVG)
    assert stats["total_entries"] == 2
    assert stats["compressed_count"] == 1
    assert stats["total_size"] == 4 + len(BIG_SVG)
    assert stats["compressed_size"] == 4 + meta.compressed_size
    assert stats["compression_ratio"] == round((4 + meta.compressed_size) / (4 + len(BIG_SVG)), 3)
    assert stats["cache_hits"] == 1
    assert stats["cache_misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_empty_stats(cache):
    stats = cache.stats()
    assert stats["compression_ratio"] == 1.0
    assert stats["hit_rate"] == 0.0


def test_reset_stats(cache):
    cache.get("missing")
    cache.reset_stats()
    stats = cache.stats()
    assert stats["cache_misses"] == 0
    assert stats["cache_hits"] == 0


def test_telemetry_events(cache):
    events = []

    def handler(event, measurements, metadata):
        events.append((event, metadata.get("key")))

    telemetry.attach("*", handler)
    try:
        cache.put("k", "v")
        cache.get("k")
        cache.get("nope")
    finally:
        telemetry.detach("*", handler)
    assert events == [("cache.put", "k"), ("cache.hit", "k"), ("cache.miss", "nope")]


# ── Config / lifecycle ───────────────────────────────────

def test_config_from_settings():
    cfg = CacheConfig.from_settings(Settings(cache_max_entries=5, cache_default_ttl_seconds=1))
    assert cfg.max_entries == 5
    assert cfg.default_ttl_seconds == 1
    assert cfg.compression_threshold_bytes == 10_000


def test_config_rejects_zero_capacity():
    with pytest.raises(ValueError):
        CacheConfig(max_entries=0)


def test_entry_without_access_time():
    entry = CacheEntry(key="k", payload=b"abc", expires_at=10.0)
    assert entry.last_accessed_at is None
    assert entry.stored_size == 3
    assert not entry.is_compressed


def test_background_sweep_purges_expired():
    clock = FakeClock()
    cache = ChartCache(CacheConfig(cleanup_interval_seconds=0.01), clock=clock)
    cache.put("k", "v", ttl=1)
    clock.advance(5)
    with cache:
        assert cache.running
        deadline = time.monotonic() + 2
        while len(cache) and time.monotonic() < deadline:
            time.sleep(0.01)
    assert not cache.running
    assert len(cache) == 0


def test_start_is_idempotent_and_stop_safe():
    cache = ChartCache(CacheConfig(cleanup_interval_seconds=10))
    cache.stop()
    cache.start()
    cache.start()
    assert cache.running
    cache.stop()
    assert not cache.running


def test_concurrent_writers_and_readers():
    cache = ChartCache(CacheConfig(max_entries=50, shard_count=8))
    errors = []

    def worker(n):
        try:
            for i in range(200):
                key = f"w{n}-{i % 30}"
                cache.put(key, f"v{i}")
                cache.get(key)
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert len(cache) <= 50


def test_hit_and_miss_events_carry_duration(cache):
    seen = {}

    def handler(event, measurements, metadata):
        seen[event] = measurements

    telemetry.attach("*", handler)
    try:
        cache.put("k", "v")
        cache.get("k")
        cache.get("nope")
    finally:
        telemetry.detach("*", handler)
    assert seen["cache.hit"]["duration_ms"] >= 0
    assert seen["cache.miss"]["duration_ms"] >= 0
