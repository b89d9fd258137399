"""UTC datetime utilities."""

from datetime import date, datetime, timedelta, timezone
from typing import Iterator


def utc_now() -> datetime:
    """
    Return current UTC time as timezone-aware datetime.

    This function should be used instead of datetime.now() or datetime.utcnow()
    to ensure all timestamps are timezone-aware and stored in UTC.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime read back from the database to aware UTC.

    SQLite returns naive datetimes for ``DateTime(timezone=True)`` columns;
    every timestamp this service writes is UTC, so a naive value is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def nights(checkin: date, checkout: date) -> Iterator[date]:
    """Yield each night of a stay: checkin inclusive, checkout exclusive."""
    current = checkin
    while current < checkout:
        yield current
        current += timedelta(days=1)
