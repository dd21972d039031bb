# schoolpickup/core/clock.py - Time helpers shared by the pickup services
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Columns hold naive UTC; aware values are converted, naive ones pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_school_time(value: datetime, tz: ZoneInfo) -> datetime:
    """Aware values are converted to the school timezone; naive values are already school-local."""
    if value.tzinfo is None:
        return value
    return value.astimezone(tz)


def js_weekday(value) -> int:
    """Weekday number with Sunday = 0, matching allowed_days_of_week."""
    return value.isoweekday() % 7
