"""Clock helpers. All stored timestamps are naive UTC."""
from datetime import datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    """The caller's ``now`` as naive UTC, or the current time."""
    return as_naive_utc(now) or utcnow()


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def range_end(value: datetime) -> datetime:
    """
    Exclusive upper bound for an inclusive ``date_to``.

    A bare date arrives as midnight and covers that whole day; any other
    instant is included as is.
    """
    value = as_naive_utc(value)
    if value.time() == time.min:
        return value + timedelta(days=1)
    return value + timedelta(microseconds=1)
