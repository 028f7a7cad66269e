# medstock/utils/time.py
from __future__ import annotations

from datetime import date, datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime | None) -> datetime | None:
    """
    Normalize a datetime coming back from the store.

    SQLite hands back naive values for timezone-aware columns; everything we
    write is UTC, so a naive value is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_today(now: datetime | None = None) -> date:
    return (as_utc(now) or utc_now()).date()
