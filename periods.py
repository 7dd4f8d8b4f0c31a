import calendar
from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    year: int
    month: int
    start: date
    end: date


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def add_months(d: date, count: int) -> date:
    """Shift ``d`` by whole months, clamping the day to the target month."""
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def resolve_month(
    month: Optional[int],
    year: Optional[int],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    year = year or today.year
    month = month or today.month
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    if not 1970 <= year <= 3000:
        raise ValueError("Year is out of range")
    return Period(year, month, month_start(year, month), month_end(year, month))


def trailing_months(months: int, *, today: Optional[date] = None) -> tuple[date, date]:
    """First and last day of the ``months`` calendar months ending this month."""
    if months < 1:
        raise ValueError("Trend window must be at least one month")
    today = today or date.today()
    first = add_months(today.replace(day=1), -(months - 1))
    return first, month_end(today.year, today.month)
