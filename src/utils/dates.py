"""Date list helpers for selecting partition dates."""

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Union

DateLike = Union[date, datetime, str]


def to_date(value: DateLike) -> date:
    """Coerce a date, datetime or ISO string (YYYY-MM-DD) to a date.

    Raises:
        ValueError: If a string cannot be parsed
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def date_range(start: DateLike, end: DateLike) -> list[date]:
    """Return every day from start to end, both inclusive.

    An end before the start yields an empty list.
    """
    current = to_date(start)
    last = to_date(end)
    days: list[date] = []
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def normalize_dates(dates: Iterable[DateLike]) -> list[date]:
    """De-duplicate dates and return them in ascending order."""
    return sorted({to_date(d) for d in dates})
