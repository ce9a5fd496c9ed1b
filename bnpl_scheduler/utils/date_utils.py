"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, timezone


def to_utc_date(value: date | datetime) -> date:
    """Normalize a date or datetime to its UTC calendar date (naive datetimes are taken as UTC)"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from databases that drop tzinfo"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(from_date: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month"""
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    day = min(from_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)
