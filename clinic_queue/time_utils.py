"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``.

    SQLite hands back naive values for ``DateTime(timezone=True)`` columns;
    those are stored in UTC, so they are tagged rather than converted.
    """

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def start_of_day(dt: datetime) -> datetime:
    """Return midnight (UTC) of the day containing ``dt``."""

    return datetime.combine(ensure_utc(dt).date(), time.min, tzinfo=timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Render ``dt`` as an ISO-8601 UTC string, passing ``None`` through."""

    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


__all__ = ["utc_now", "ensure_utc", "start_of_day", "isoformat"]
