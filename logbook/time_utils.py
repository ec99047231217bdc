"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Return today's date in UTC."""

    return utc_now().date()


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Return an ISO-8601 string for ``dt`` normalised to UTC."""

    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


__all__ = ["utc_now", "utc_today", "ensure_utc", "to_iso"]
