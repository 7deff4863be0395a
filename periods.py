from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidPeriod
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date  # inclusive

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Shift by whole calendar months, clamping the day to the target month's end."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def end_date_for_period(start: date, period: Union[BudgetPeriod, str]) -> date:
    """Exclusive end of the budget cycle that begins on ``start``.

    Expenses count toward the cycle when ``start <= expense_date < end``.
    """
    try:
        period = BudgetPeriod(period)
    except ValueError as exc:
        raise InvalidPeriod(f"Unsupported budget period: {period}") from exc
    if period == BudgetPeriod.weekly:
        return start + timedelta(days=7)
    if period == BudgetPeriod.monthly:
        return add_months(start, 1)
    return add_months(start, 12)


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    return d.replace(day=days_in_month(d.year, d.month))


def week_start(d: date) -> date:
    # Weeks start on Sunday.
    return d - timedelta(days=(d.weekday() + 1) % 7)


def this_week(today: Optional[date] = None) -> Period:
    today = today or local_today()
    start = week_start(today)
    return Period("this_week", start, start + timedelta(days=6))


def this_month(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return Period("this_month", month_start(today), month_end(today))


def this_year(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))


def last_month(today: Optional[date] = None) -> Period:
    today = today or local_today()
    last_month_end = month_start(today) - date.resolution
    return Period("last_month", month_start(last_month_end), last_month_end)


def last_year(today: Optional[date] = None) -> Period:
    today = today or local_today()
    year = today.year - 1
    return Period("last_year", date(year, 1, 1), date(year, 12, 31))
