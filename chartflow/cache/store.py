"""
Chart artifact cache.

Process-local, thread-safe key -> artifact store with:
  - per-entry TTL measured on a monotonic clock (expired entries are
    dropped on read and by a periodic background sweep)
  - optional gzip compression above a size threshold, with size ceilings
    on decompression
  - LRU eviction of the least recently accessed 10% (at least one entry)
    once the entry count reaches ``max_entries``
  - hit / miss / eviction / expiration counters

Entries are spread over independent shards, each guarded by its own lock,
so concurrent readers and writers of different keys rarely contend.  The
cache is an explicit object with injected configuration and a start/stop
lifecycle; nothing here is a module-level singleton.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from chartflow.cache import compression
from chartflow.cache.compression import CompressionMetadata
from chartflow.core import telemetry
from chartflow.core.config import Settings, get_settings
from chartflow.core.errors import CompressionError
from chartflow.core.logging import get_logger
from chartflow.core.utils import elapsed_ms, timer

logger = get_logger(__name__)

Payload = bytes | str


# ── Configuration ───────────────────────────────────────


@dataclass(frozen=True)
class CacheConfig:
    default_ttl_seconds: float = 300.0
    cleanup_interval_seconds: float = 60.0
    max_entries: int = 1000
    shard_count: int = 16
    compression_threshold_bytes: int = compression.DEFAULT_THRESHOLD
    compression_level: int = compression.DEFAULT_LEVEL
    max_compressed_input_bytes: int = compression.MAX_COMPRESSED_SIZE
    max_decompressed_output_bytes: int = compression.MAX_DECOMPRESSED_SIZE

    def __post_init__(self) -> None:
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if self.shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        if self.cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds must be positive")
        if self.default_ttl_seconds < 0:
            raise ValueError("default_ttl_seconds must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CacheConfig":
        s = settings or get_settings()
        return cls(
            default_ttl_seconds=s.cache_default_ttl_seconds,
            cleanup_interval_seconds=s.cache_cleanup_interval_seconds,
            max_entries=s.cache_max_entries,
            shard_count=s.cache_shard_count,
            compression_threshold_bytes=s.compression_threshold_bytes,
            compression_level=s.compression_level,
            max_compressed_input_bytes=s.max_compressed_input_bytes,
            max_decompressed_output_bytes=s.max_decompressed_output_bytes,
        )


# ── Entries and results ─────────────────────────────────


@dataclass
class CacheEntry:
    """One cached artifact.

    ``last_accessed_at`` of None sorts before every real access time, so
    such entries are evicted first.
    """
    key: str
    payload: Payload
    expires_at: float
    last_accessed_at: float | None = None
    compression: CompressionMetadata | None = None
    is_text: bool = False

    @property
    def is_compressed(self) -> bool:
        return self.compression is not None

    @property
    def stored_size(self) -> int:
        if isinstance(self.payload, str):
            return len(self.payload.encode("utf-8"))
        return len(self.payload)

    @property
    def original_size(self) -> int:
        return self.compression.original_size if self.compression else self.stored_size

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


class CacheErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    COMPRESSED_DATA = "compressed_data"
    INPUT_TOO_LARGE = "input_too_large"
    COMPRESSED_DATA_TOO_LARGE = "compressed_data_too_large"
    DECOMPRESSED_DATA_TOO_LARGE = "decompressed_data_too_large"
    DECOMPRESSION_FAILED = "decompression_failed"
    COMPRESSION_FAILED = "compression_failed"


@dataclass
class CacheResult:
    value: Any = None
    error: CacheErrorCode | None = None
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None, metadata: dict[str, Any] | None = None) -> "CacheResult":
        return cls(value=value, metadata=metadata or {})

    @classmethod
    def failure(cls, error: CacheErrorCode, message: str = "") -> "CacheResult":
        return cls(error=error, message=message or error.value)

    @classmethod
    def from_exception(cls, exc: CompressionError) -> "CacheResult":
        return cls.failure(CacheErrorCode(exc.code), str(exc))


# ── Cache ───────────────────────────────────────────────


class ChartCache:
    """Sharded TTL + LRU cache for rendered chart artifacts.

    Parameters
    ----------
    config : CacheConfig, optional
        Defaults to ``CacheConfig.from_settings()``.
    clock : callable, optional
        Monotonic time source in seconds. Tests inject a fake clock.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig.from_settings()
        self._clock = clock
        self._shards: list[dict[str, CacheEntry]] = [{} for _ in range(self.config.shard_count)]
        self._locks = [threading.Lock() for _ in range(self.config.shard_count)]
        # Taken only when a new key is inserted; reads never take it
        self._admit_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ── Lifecycle ───────────────────────────────────────

    def start(self) -> None:
        """Start the background expiry sweep. Idempotent."""
        if self.running:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="chartflow-cache-sweeper", daemon=True
        )
        self._sweeper.start()
        logger.debug("Cache sweeper started (interval=%.1fs)", self.config.cleanup_interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the background sweep and wait for it to exit."""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None
        logger.debug("Cache sweeper stopped")

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def __enter__(self) -> "ChartCache":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.config.cleanup_interval_seconds):
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Error in cache cleanup loop")

    # ── Writes ──────────────────────────────────────────

    def put(self, key: str, payload: Payload, ttl: float | None = None) -> None:
        """Store *payload* uncompressed for *ttl* seconds (default from config)."""
        ttl = self.config.default_ttl_seconds if ttl is None else ttl
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            expires_at=now + ttl,
            last_accessed_at=now,
            is_text=isinstance(payload, str),
        )
        self._insert(entry)
        telemetry.emit("cache.put", {"size": entry.stored_size}, {"key": key, "ttl": ttl})

    def put_compressed(
        self,
        key: str,
        payload: Payload,
        ttl: float | None = None,
        threshold: int | None = None,
    ) -> CacheResult:
        """Store *payload*, gzip-compressed when it reaches *threshold* bytes.

        Returns the compression metadata on success.  On a codec failure or
        an oversized input nothing is stored and the error is returned.
        """
        ttl = self.config.default_ttl_seconds if ttl is None else ttl
        threshold = self.config.compression_threshold_bytes if threshold is None else threshold

        if not compression.should_compress(payload, threshold):
            logger.debug("Storing %s uncompressed (below %d bytes)", key, threshold)
            self.put(key, payload, ttl)
            size = len(payload.encode("utf-8")) if isinstance(payload, str) else len(payload)
            meta = CompressionMetadata(size, size, 1.0, 0.0)
            return CacheResult.success(metadata=meta.to_dict())

        try:
            packed, meta = compression.compress(
                payload,
                level=self.config.compression_level,
                max_input_size=self.config.max_decompressed_output_bytes,
            )
        except CompressionError as exc:
            return CacheResult.from_exception(exc)

        # An entry get_decompressed would refuse is never stored
        if meta.compressed_size > self.config.max_compressed_input_bytes:
            logger.warning(
                "Not caching %s: compressed size %d exceeds %d bytes",
                key, meta.compressed_size, self.config.max_compressed_input_bytes,
            )
            return CacheResult.failure(
                CacheErrorCode.COMPRESSED_DATA_TOO_LARGE,
                f"Compressed size {meta.compressed_size} exceeds "
                f"{self.config.max_compressed_input_bytes} bytes",
            )

        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=packed,
            expires_at=now + ttl,
            last_accessed_at=now,
            compression=meta,
            is_text=isinstance(payload, str),
        )
        self._insert(entry)
        telemetry.emit(
            "cache.put_compressed",
            {
                "original_size": meta.original_size,
                "compressed_size": meta.compressed_size,
                "ratio": meta.ratio,
            },
            {"key": key, "ttl": ttl},
        )
        return CacheResult.success(metadata=meta.to_dict())

    def _insert(self, entry: CacheEntry) -> None:
        shard, lock = self._shard_for(entry.key)
        with lock:
            if entry.key in shard:
                shard[entry.key] = entry
                return
        # New keys are admitted one at a time so the capacity bound holds
        with self._admit_lock:
            if len(self) >= self.config.max_entries:
                self._evict()
            with lock:
                shard[entry.key] = entry

    # ── Reads ───────────────────────────────────────────

    def get(self, key: str) -> CacheResult:
        """Return the stored payload.

        A compressed entry counts as a hit but yields ``COMPRESSED_DATA``;
        use ``get_decompressed`` for those.
        """
        entry = self._lookup(key)
        if entry is None:
            return CacheResult.failure(CacheErrorCode.NOT_FOUND)
        if entry.is_compressed:
            return CacheResult.failure(
                CacheErrorCode.COMPRESSED_DATA, f"Entry {key} is compressed; use get_decompressed"
            )
        self._touch(key, entry)
        return CacheResult.success(entry.payload)

    def get_decompressed(self, key: str) -> CacheResult:
        """Return the payload, inflating it first when it was stored compressed."""
        entry = self._lookup(key)
        if entry is None:
            return CacheResult.failure(CacheErrorCode.NOT_FOUND)
        if not entry.is_compressed:
            self._touch(key, entry)
            return CacheResult.success(entry.payload)

        try:
            raw = compression.decompress(
                entry.payload,
                max_compressed_size=self.config.max_compressed_input_bytes,
                max_decompressed_size=self.config.max_decompressed_output_bytes,
            )
        except CompressionError as exc:
            return CacheResult.from_exception(exc)

        self._touch(key, entry)
        value = raw.decode("utf-8") if entry.is_text else raw
        return CacheResult.success(value, metadata=entry.compression.to_dict())

    def _lookup(self, key: str) -> CacheEntry | None:
        """Find a live entry, recording the hit or miss."""
        t0 = time.perf_counter()
        now = self._clock()
        shard, lock = self._shard_for(key)
        expired = False
        with lock:
            entry = shard.get(key)
            if entry is not None and entry.is_expired(now):
                del shard[key]
                entry = None
                expired = True

        with self._stats_lock:
            if entry is None:
                self._misses += 1
                self._expirations += int(expired)
            else:
                self._hits += 1

        if entry is None:
            telemetry.emit(
                "cache.miss",
                {"count": 1, "duration_ms": elapsed_ms(t0)},
                {"key": key, "expired": expired},
            )
        else:
            telemetry.emit(
                "cache.hit",
                {"count": 1, "size": entry.stored_size, "duration_ms": elapsed_ms(t0)},
                {"key": key},
            )
        return entry

    def _touch(self, key: str, entry: CacheEntry) -> None:
        shard, lock = self._shard_for(key)
        with lock:
            if shard.get(key) is entry:
                entry.last_accessed_at = self._clock()

    # ── Removal ─────────────────────────────────────────

    def delete(self, key: str) -> bool:
        shard, lock = self._shard_for(key)
        with lock:
            return shard.pop(key, None) is not None

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        count = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                count += len(shard)
                shard.clear()
        logger.debug("Cleared %d entries from chart cache", count)
        telemetry.emit("cache.clear", {"count": count})
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = self._clock()
        removed = 0
        with timer() as t:
            for shard, lock in zip(self._shards, self._locks):
                with lock:
                    expired = [k for k, e in shard.items() if e.is_expired(now)]
                    for k in expired:
                        del shard[k]
                    removed += len(expired)
        if removed:
            with self._stats_lock:
                self._expirations += removed
            logger.debug("Cleaned up %d expired cache entries", removed)
        telemetry.emit("cache.cleanup", {"count": removed, "duration_ms": t["elapsed_ms"]})
        return removed

    def _evict(self) -> None:
        """Drop the least recently accessed 10% of entries, at least one.

        Caller holds ``_admit_lock``.
        """
        candidates: list[tuple[float, str]] = []
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                candidates.extend(
                    (-math.inf if e.last_accessed_at is None else e.last_accessed_at, k)
                    for k, e in shard.items()
                )
        to_evict = max(self.config.max_entries // 10, 1)
        candidates.sort(key=lambda c: c[0])
        evicted = 0
        for _, key in candidates[:to_evict]:
            evicted += int(self.delete(key))

        with self._stats_lock:
            self._evictions += evicted
        logger.debug("Evicted %d cache entries (LRU)", evicted)
        telemetry.emit("cache.eviction", {"count": evicted})

    # ── Statistics ──────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        total_entries = total_size = compressed_size = compressed_count = expired_count = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                for entry in shard.values():
                    total_entries += 1
                    total_size += entry.original_size
                    compressed_size += entry.stored_size
                    compressed_count += int(entry.is_compressed)
                    expired_count += int(entry.is_expired(now))

        with self._stats_lock:
            hits, misses = self._hits, self._misses
            evictions, expirations = self._evictions, self._expirations

        requests = hits + misses
        return {
            "total_entries": total_entries,
            "max_entries": self.config.max_entries,
            "total_size": total_size,
            "compressed_size": compressed_size,
            "compression_ratio": round(compressed_size / total_size, 3) if total_size else 1.0,
            "compressed_count": compressed_count,
            "expired_count": expired_count,
            "cache_hits": hits,
            "cache_misses": misses,
            "hit_rate": round(hits / requests, 3) if requests else 0.0,
            "evictions": evictions,
            "expirations": expirations,
        }

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._hits = self._misses = self._evictions = self._expirations = 0

    # ── Internals ───────────────────────────────────────

    def _shard_for(self, key: str) -> tuple[dict[str, CacheEntry], threading.Lock]:
        idx = hash(key) % len(self._shards)
        return self._shards[idx], self._locks[idx]

    def __len__(self) -> int:
        return sum(len(s) for s in self._shards)
