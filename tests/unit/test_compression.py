"""
Unit tests -- gzip compression with size ceilings.
"""
import gzip

import pytest

from chartflow.cache import compression
from chartflow.core.errors import (
    CompressedDataTooLargeError,
    CompressionFailedError,
    DecompressedDataTooLargeError,
    DecompressionFailedError,
    InputTooLargeError,
)

SVG = "<svg>" + "<g><rect x='1' y='2' width='3' height='4'/></g>" * 500 + "</svg>"


def test_compress_roundtrip_and_metadata():
    packed, meta = compression.compress(SVG)
    assert compression.decompress(packed).decode() == SVG
    assert meta.original_size == len(SVG.encode())
    assert meta.compressed_size == len(packed)
    assert meta.ratio < 0.5
    assert meta.compression_time_ms >= 0
    assert set(meta.to_dict()) == {"original_size", "compressed_size", "ratio", "compression_time_ms"}


def test_compress_is_deterministic():
    assert compression.compress(SVG)[0] == compression.compress(SVG)[0]


def test_output_is_standard_gzip():
    packed, _ = compression.compress(b"hello")
    assert gzip.decompress(packed) == b"hello"


def test_compress_input_ceiling():
    with pytest.raises(InputTooLargeError) as exc_info:
        compression.compress(b"x" * 101, max_input_size=100)
    assert exc_info.value.code == "input_too_large"


def test_compress_bad_level():
    with pytest.raises(CompressionFailedError):
        compression.compress(b"data", level=42)


def test_decompress_compressed_ceiling():
    packed, _ = compression.compress(SVG)
    with pytest.raises(CompressedDataTooLargeError):
        compression.decompress(packed, max_compressed_size=len(packed) - 1)


def test_decompression_bomb_rejected():
    bomb = gzip.compress(b"\0" * 5_000_000)
    assert len(bomb) < 10_000
    with pytest.raises(DecompressedDataTooLargeError) as exc_info:
        compression.decompress(bomb, max_decompressed_size=1_000_000)
    assert exc_info.value.limit == 1_000_000


def test_decompress_exact_limit_allowed():
    packed = gzip.compress(b"a" * 1000)
    assert compression.decompress(packed, max_decompressed_size=1000) == b"a" * 1000


def test_decompress_garbage():
    with pytest.raises(DecompressionFailedError):
        compression.decompress(b"definitely not gzip")


def test_decompress_truncated_stream():
    packed, _ = compression.compress(SVG)
    with pytest.raises(DecompressionFailedError):
        compression.decompress(packed[: len(packed) // 2])


def test_should_compress_threshold_inclusive():
    assert compression.should_compress(b"x" * 10_000)
    assert not compression.should_compress(b"x" * 9_999)
    assert compression.should_compress("abc", threshold=3)


def test_compress_if_needed():
    small, meta = compression.compress_if_needed("<svg/>")
    assert small == b"<svg/>"
    assert meta is None
    packed, meta = compression.compress_if_needed(SVG)
    assert meta is not None
    assert compression.decompress(packed).decode() == SVG


def test_compression_ratio():
    assert compression.compression_ratio(b"x" * 1000, b"y" * 500) == 0.5
    assert compression.compression_ratio(b"", b"") == 1.0


def test_validate_compression():
    packed, _ = compression.compress(SVG)
    assert compression.validate_compression(packed, SVG)
    assert not compression.validate_compression(packed, SVG + "!")
    assert not compression.validate_compression(b"junk", SVG)
