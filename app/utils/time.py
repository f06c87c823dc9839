"""Time utilities."""
from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def days_from(start: datetime, days: int) -> datetime:
    return as_utc(start) + timedelta(days=days)


__all__ = ["utcnow", "as_utc", "days_from"]
