from datetime import datetime

import pytz

UTC = pytz.utc


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return UTC.localize(value)
    return value.astimezone(UTC)


def age_hours(value: datetime, now: datetime) -> float:
    return (now - as_utc(value)).total_seconds() / 3600
