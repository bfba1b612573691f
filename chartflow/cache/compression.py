"""
Gzip compression for rendered chart artifacts.

SVG output is repetitive XML and typically shrinks to 30-50% of its size.
Small payloads are stored as-is; the break-even threshold defaults to
10 000 bytes.

Decompression is streamed through ``zlib.decompressobj`` with an output
budget, so a decompression bomb is rejected after at most
``max_decompressed_size + 1`` bytes have been produced instead of being
inflated in full.
"""
from __future__ import annotations

import gzip
import time
import zlib
from dataclasses import asdict, dataclass
from typing import Any

from chartflow.core.errors import (
    CompressedDataTooLargeError,
    CompressionFailedError,
    DecompressedDataTooLargeError,
    DecompressionFailedError,
    InputTooLargeError,
)
from chartflow.core.logging import get_logger
from chartflow.core.utils import elapsed_ms

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 10_000
DEFAULT_LEVEL = 6
MAX_COMPRESSED_SIZE = 10 * 1024 * 1024
MAX_DECOMPRESSED_SIZE = 50 * 1024 * 1024

# gzip header + trailer, as opposed to a raw zlib stream
_GZIP_WBITS = 16 + zlib.MAX_WBITS


@dataclass(frozen=True)
class CompressionMetadata:
    original_size: int
    compressed_size: int
    ratio: float
    compression_time_ms: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def ratio_of(original_size: int, compressed_size: int) -> float:
    """compressed / original; 1.0 for empty input."""
    if original_size == 0:
        return 1.0
    return compressed_size / original_size


def compression_ratio(original: bytes | str, compressed: bytes) -> float:
    return ratio_of(len(_as_bytes(original)), len(compressed))


def should_compress(data: bytes | str, threshold: int = DEFAULT_THRESHOLD) -> bool:
    return len(_as_bytes(data)) >= threshold


def compress(
    data: bytes | str,
    level: int = DEFAULT_LEVEL,
    max_input_size: int = MAX_DECOMPRESSED_SIZE,
) -> tuple[bytes, CompressionMetadata]:
    """Gzip *data* and describe the result.

    Raises ``InputTooLargeError`` when the input exceeds *max_input_size*
    and ``CompressionFailedError`` on any codec error.
    """
    raw = _as_bytes(data)
    if len(raw) > max_input_size:
        logger.warning(
            "Compression rejected: input size %d exceeds maximum %d bytes", len(raw), max_input_size
        )
        raise InputTooLargeError(len(raw), max_input_size)

    t0 = time.perf_counter()
    try:
        # mtime=0 keeps the output byte-stable for identical input
        packed = gzip.compress(raw, compresslevel=level, mtime=0)
    except (zlib.error, ValueError) as exc:
        logger.error("Compression failed: %s", exc)
        raise CompressionFailedError(str(exc)) from exc

    meta = CompressionMetadata(
        original_size=len(raw),
        compressed_size=len(packed),
        ratio=ratio_of(len(raw), len(packed)),
        compression_time_ms=elapsed_ms(t0),
    )
    logger.debug(
        "Compressed %d -> %d bytes (%.1f%%) in %.2fms",
        meta.original_size, meta.compressed_size, meta.ratio * 100, meta.compression_time_ms,
    )
    return packed, meta


def decompress(
    data: bytes,
    max_compressed_size: int = MAX_COMPRESSED_SIZE,
    max_decompressed_size: int = MAX_DECOMPRESSED_SIZE,
) -> bytes:
    """Inflate gzip *data* while enforcing both size ceilings.

    Raises
    ------
    CompressedDataTooLargeError
        The compressed input itself is larger than *max_compressed_size*.
    DecompressedDataTooLargeError
        Inflating would produce more than *max_decompressed_size* bytes.
    DecompressionFailedError
        The input is not a complete, valid gzip stream.
    """
    if len(data) > max_compressed_size:
        logger.warning(
            "Decompression rejected: compressed size %d exceeds maximum %d bytes",
            len(data), max_compressed_size,
        )
        raise CompressedDataTooLargeError(len(data), max_compressed_size)

    inflater = zlib.decompressobj(_GZIP_WBITS)
    out = bytearray()
    pending = bytes(data)
    try:
        while pending and not inflater.eof:
            budget = max_decompressed_size - len(out) + 1
            out += inflater.decompress(pending, budget)
            if len(out) > max_decompressed_size:
                logger.warning(
                    "Decompression bomb rejected: output exceeds %d bytes from %d compressed bytes",
                    max_decompressed_size, len(data),
                )
                raise DecompressedDataTooLargeError(max_decompressed_size, len(data))
            pending = inflater.unconsumed_tail
    except zlib.error as exc:
        logger.error("Decompression failed: %s", exc)
        raise DecompressionFailedError(str(exc)) from exc

    if not inflater.eof:
        logger.error("Decompression failed: truncated gzip stream (%d bytes)", len(data))
        raise DecompressionFailedError("truncated gzip stream")
    return bytes(out)


def compress_if_needed(
    data: bytes | str,
    threshold: int = DEFAULT_THRESHOLD,
    level: int = DEFAULT_LEVEL,
    max_input_size: int = MAX_DECOMPRESSED_SIZE,
) -> tuple[bytes, CompressionMetadata | None]:
    """Compress only when *data* reaches *threshold* bytes.

    Returns ``(payload, metadata)``; metadata is None when the payload was
    left uncompressed.
    """
    raw = _as_bytes(data)
    if not should_compress(raw, threshold):
        logger.debug("Skipping compression for %d bytes (< %d threshold)", len(raw), threshold)
        return raw, None
    return compress(raw, level=level, max_input_size=max_input_size)


def validate_compression(compressed: bytes, original: bytes | str) -> bool:
    """True when *compressed* inflates back to exactly *original*."""
    try:
        return decompress(compressed) == _as_bytes(original)
    except (DecompressionFailedError, CompressedDataTooLargeError, DecompressedDataTooLargeError):
        return False
