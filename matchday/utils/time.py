"""Time helpers. All timestamps are stored as naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC (matches the DB column convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
