"""Runtime configuration for the queue service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

APP_NAME = "ClinicQueue"

load_dotenv()


@dataclass(frozen=True)
class QueueSettings:
    """Resolved service settings.

    Every timing knob of the cache, the invalidator and the background jobs
    lives here so there is exactly one authoritative value for each.
    """

    jwt_secret: str = "dev-secret-change-me-before-deploying"
    access_token_expire_minutes: int = 7 * 24 * 60
    cache_ttl_short_seconds: float = 60.0
    cache_ttl_long_seconds: float = 300.0
    cache_sweep_interval_seconds: float = 10.0
    invalidate_debounce_ms: int = 300
    dispensary_auto_complete_minutes: int = 60
    auto_complete_interval_seconds: float = 300.0
    completed_retention_hours: int = 24
    retention_cleanup_interval_seconds: float = 3600.0
    bootstrap_admin_username: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None
    log_level: str = "INFO"
    version: str = "dev"

    @property
    def invalidate_debounce_seconds(self) -> float:
        return self.invalidate_debounce_ms / 1000.0

    @property
    def dispensary_threshold_seconds(self) -> float:
        return self.dispensary_auto_complete_minutes * 60.0


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _int_or(name: str, default: int) -> int:
    value = _get_int_env(name)
    return default if value is None else value


def _float_or(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> QueueSettings:
    """Return the active service settings derived from the environment."""

    defaults = QueueSettings()
    return QueueSettings(
        jwt_secret=os.getenv("JWT_SECRET") or defaults.jwt_secret,
        access_token_expire_minutes=_int_or(
            "ACCESS_TOKEN_EXPIRE_MINUTES", defaults.access_token_expire_minutes
        ),
        cache_ttl_short_seconds=_float_or(
            "CACHE_TTL_SHORT_SECONDS", defaults.cache_ttl_short_seconds
        ),
        cache_ttl_long_seconds=_float_or(
            "CACHE_TTL_LONG_SECONDS", defaults.cache_ttl_long_seconds
        ),
        cache_sweep_interval_seconds=_float_or(
            "CACHE_SWEEP_INTERVAL_SECONDS", defaults.cache_sweep_interval_seconds
        ),
        invalidate_debounce_ms=_int_or("CACHE_INVALIDATE_DEBOUNCE_MS", defaults.invalidate_debounce_ms),
        dispensary_auto_complete_minutes=_int_or(
            "DISPENSARY_AUTO_COMPLETE_MINUTES", defaults.dispensary_auto_complete_minutes
        ),
        auto_complete_interval_seconds=_float_or(
            "AUTO_COMPLETE_INTERVAL_SECONDS", defaults.auto_complete_interval_seconds
        ),
        completed_retention_hours=_int_or(
            "COMPLETED_RETENTION_HOURS", defaults.completed_retention_hours
        ),
        retention_cleanup_interval_seconds=_float_or(
            "RETENTION_CLEANUP_INTERVAL_SECONDS", defaults.retention_cleanup_interval_seconds
        ),
        bootstrap_admin_username=os.getenv("BOOTSTRAP_ADMIN_USERNAME") or None,
        bootstrap_admin_password=os.getenv("BOOTSTRAP_ADMIN_PASSWORD") or None,
        log_level=(os.getenv("LOG_LEVEL") or defaults.log_level).upper(),
        version=os.getenv("GIT_COMMIT") or os.getenv("APP_VERSION") or defaults.version,
    )


__all__ = ["APP_NAME", "QueueSettings", "get_settings"]
