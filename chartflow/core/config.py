"""
Centralised settings for the chart engine, loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)

_MB = 1024 * 1024


class Settings(BaseSettings):
    # ── Cache ────────────────────────────────────────────
    cache_default_ttl_seconds: float = 300.0
    cache_cleanup_interval_seconds: float = 60.0
    cache_max_entries: int = 1000
    cache_shard_count: int = 16

    # ── Compression ──────────────────────────────────────
    compression_threshold_bytes: int = 10_000
    compression_level: int = 6
    max_compressed_input_bytes: int = 10 * _MB
    max_decompressed_output_bytes: int = 50 * _MB

    # ── Transforms ───────────────────────────────────────
    week_start: str = "monday"
    transform_catalog_path: str | None = None

    # ── App ──────────────────────────────────────────────
    log_level: str = "INFO"

    class Config:
        env_prefix = "CHARTFLOW_"
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
