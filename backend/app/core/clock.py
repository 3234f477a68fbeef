# backend/app/core/clock.py
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware.

    SQLite hands back naive datetimes even for DateTime(timezone=True)
    columns; everything is stored in UTC so the tzinfo can be attached.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
