"""Calendar arithmetic for ages, contract terms and windows."""

from __future__ import annotations

import calendar
from datetime import date

DAYS_PER_YEAR = 365


def age_on(birth_date: date, on: date) -> int:
    """Whole years between *birth_date* and *on*."""
    age = on.year - birth_date.year
    if (on.month, on.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def months_between(start: date, end: date) -> int:
    """Calendar-month difference, ignoring days; never negative."""
    return max(0, (end.year - start.year) * 12 + (end.month - start.month))


def add_months(d: date, months: int) -> date:
    """Shift *d* by *months*, clamping the day to the target month's length."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def years_between(start: date, end: date) -> float:
    """Fractional years using a 365-day year."""
    return (end - start).days / DAYS_PER_YEAR
