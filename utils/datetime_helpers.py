"""
Naive-UTC timestamps and business-day arithmetic.

Every DateTime column in models.py is stored without tzinfo, in UTC.
Values coming from callers (API payloads, tests, the scheduler) go through
ensure_naive_datetime before they are compared with stored timestamps.
"""

from datetime import datetime, date, timedelta, timezone
from typing import Iterable, Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to the naive-UTC form used by the schema.

    Aware values are shifted to UTC and stripped of tzinfo; naive values
    are assumed to be UTC already and returned as-is. None passes through.

        >>> ensure_naive_datetime(datetime(2024, 1, 5, 12, tzinfo=timezone(timedelta(hours=1))))
        datetime.datetime(2024, 1, 5, 11, 0)
    """
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def get_naive_utc_now() -> datetime:
    """Current UTC time without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_business_day(day: date, holidays: Iterable[date] = ()) -> bool:
    """Monday to Friday, excluding the given holidays"""
    return day.weekday() < 5 and day not in set(holidays)


def add_business_days(start: datetime, business_days: int, holidays: Iterable[date] = ()) -> datetime:
    """
    Advance ``start`` by a number of business days, keeping the time of day.

    Days are walked one at a time and only Monday to Friday dates that are
    not in ``holidays`` count towards the total. Zero returns ``start``.

    Example:
        >>> add_business_days(datetime(2024, 1, 5, 10, 0), 3)  # Friday
        datetime.datetime(2024, 1, 10, 10, 0)
    """
    if business_days < 0:
        raise ValueError("business_days must not be negative")

    holiday_set = set(holidays)
    current = start
    counted = 0
    while counted < business_days:
        current = current + timedelta(days=1)
        if is_business_day(current.date(), holiday_set):
            counted += 1
    return current


def start_of_day(day: date) -> datetime:
    """Naive midnight for a calendar date"""
    return datetime(day.year, day.month, day.day)
