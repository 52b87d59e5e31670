from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to timezone-aware UTC.

    SQLite hands back naive values for DateTime(timezone=True) columns;
    naive values are interpreted as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    dt_utc = as_utc(dt)
    if dt_utc is None:
        return None
    return dt_utc.replace(microsecond=0).isoformat().replace("+00:00", "Z")
