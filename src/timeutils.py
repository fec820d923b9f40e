from datetime import datetime, timedelta, timezone
from typing import Optional

# Persisted datetimes are naive UTC

def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise ``value`` to naive UTC, leaving naive values untouched"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap test; intervals that only touch do not overlap"""
    return start_a < end_b and start_b < end_a

def duration_minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60

def hours_until(moment: datetime, now: datetime) -> float:
    return (moment - now) / timedelta(hours=1)
