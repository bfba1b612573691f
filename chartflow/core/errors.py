"""
Exception hierarchy for the chart engine.

Exceptions are raised inside a component and converted into explicit result
objects (``TransformResult``, ``CacheResult``, ``ChartResult``) at its public
boundary.  Only ``SpecificationError`` and ``PivotShapeError`` are allowed to
reach callers, because both signal a malformed request rather than bad data.
"""
from __future__ import annotations


class ChartflowError(Exception):
    """Base class for all chart engine errors."""


class SpecificationError(ChartflowError):
    """A transform specification failed validation."""

    def __init__(self, errors: list[str], name: str | None = None):
        self.errors = list(errors)
        self.name = name
        prefix = f"Invalid transform '{name}'" if name else "Invalid transform"
        super().__init__(f"{prefix}: " + "; ".join(self.errors))


class PivotShapeError(ChartflowError):
    """A pivot table is not rectangular."""


# ── Compression ─────────────────────────────────────────


class CompressionError(ChartflowError):
    """Base class for codec failures. ``code`` is a stable identifier."""

    code = "compression_error"


class InputTooLargeError(CompressionError):
    code = "input_too_large"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Input size {size} bytes exceeds maximum {limit} bytes")


class CompressedDataTooLargeError(CompressionError):
    code = "compressed_data_too_large"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Compressed data size {size} bytes exceeds maximum {limit} bytes")


class DecompressedDataTooLargeError(CompressionError):
    code = "decompressed_data_too_large"

    def __init__(self, limit: int, compressed_size: int):
        self.limit = limit
        self.compressed_size = compressed_size
        super().__init__(
            f"Decompressed output exceeds maximum {limit} bytes "
            f"(from {compressed_size} compressed bytes)"
        )


class DecompressionFailedError(CompressionError):
    code = "decompression_failed"


class CompressionFailedError(CompressionError):
    code = "compression_failed"
