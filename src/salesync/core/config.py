from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_DATABASE_URL = "sqlite:///salesync.db"
DEFAULT_API_BASE = "https://partner.steam-api.com"
_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Sync engine configuration loaded at process startup."""

    database_url: str = DEFAULT_DATABASE_URL
    api_base: str = DEFAULT_API_BASE
    worker_count: int = 10
    http_concurrency: int = 8
    flush_threshold: int = 1000
    high_water: int = 5000
    max_retries: int = 3
    retry_failed_tasks: bool = True
    log_level: str = "INFO"


def _int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def load_sync_config_from_env() -> SyncConfig:
    """Load sync config from env and validate it."""
    database_url = (
        os.environ.get("SALESYNC_DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL
    )
    api_base = os.environ.get("SALESYNC_API_BASE", "").strip() or DEFAULT_API_BASE

    flush_threshold = _int_env("SALESYNC_FLUSH_THRESHOLD", 1000)
    high_water = _int_env("SALESYNC_HIGH_WATER", 5000)
    if high_water < flush_threshold:
        raise ValueError(
            "SALESYNC_HIGH_WATER must be >= SALESYNC_FLUSH_THRESHOLD "
            f"({high_water} < {flush_threshold})"
        )

    log_level = os.environ.get("SALESYNC_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(
            "SALESYNC_LOG_LEVEL must be one of: " + ", ".join(sorted(_LOG_LEVELS))
        )

    return SyncConfig(
        database_url=database_url,
        api_base=api_base,
        worker_count=_int_env("SALESYNC_WORKERS", 10),
        http_concurrency=_int_env("SALESYNC_HTTP_CONCURRENCY", 8),
        flush_threshold=flush_threshold,
        high_water=high_water,
        max_retries=_int_env("SALESYNC_MAX_RETRIES", 3),
        retry_failed_tasks=_bool_env("SALESYNC_RETRY_FAILED", True),
        log_level=log_level,
    )
