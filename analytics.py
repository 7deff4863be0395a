"""Reporting views computed from a user's expenses.

Everything here is a pure function of an expense list plus "today"; the
services layer fetches the rows and serialises the results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Iterable, Mapping, Optional, Sequence

from models import Expense, ExpenseCategory
from money import percentage
from periods import (
    Period,
    add_months,
    last_month,
    last_year,
    this_month,
    this_week,
    this_year,
)

UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_ICON = "💰"
UNCATEGORIZED_COLOR = "#6B7280"

TREND_MONTHS = 12
TREND_DAYS = 30
TOP_CATEGORIES = 5


@dataclass(frozen=True)
class CategoryTotal:
    category_id: Optional[int]
    category: Optional[ExpenseCategory]
    amount_cents: int
    count: int
    percent: float

    @property
    def name(self) -> str:
        return self.category.name if self.category else UNCATEGORIZED_NAME

    @property
    def icon(self) -> str:
        if self.category and self.category.icon:
            return self.category.icon
        return UNCATEGORIZED_ICON

    @property
    def color(self) -> str:
        if self.category and self.category.color:
            return self.category.color
        return UNCATEGORIZED_COLOR


@dataclass(frozen=True)
class TrendPoint:
    key: str
    label: str
    amount_cents: int
    count: int


@dataclass(frozen=True)
class SpendingByPeriod:
    this_week: int
    this_month: int
    this_year: int
    last_month: int
    last_year: int


def sum_cents(expenses: Iterable[Expense]) -> int:
    return sum(e.amount_cents for e in expenses)


def within(expenses: Iterable[Expense], period: Period) -> list[Expense]:
    return [e for e in expenses if period.contains(e.expense_date)]


def category_breakdown(
    expenses: Sequence[Expense],
    categories: Mapping[int, ExpenseCategory],
) -> list[CategoryTotal]:
    """Totals per category, largest first.

    Uncategorized expenses, and expenses whose category is not visible in
    ``categories``, are grouped under a single ``None`` bucket. Equal amounts
    keep first-seen order.
    """
    totals: dict[Optional[int], list[int]] = {}
    for expense in expenses:
        key = expense.category_id if expense.category_id in categories else None
        bucket = totals.setdefault(key, [0, 0])
        bucket[0] += expense.amount_cents
        bucket[1] += 1

    grand_total = sum(amount for amount, _ in totals.values())
    rows = [
        CategoryTotal(
            category_id=key,
            category=categories.get(key) if key is not None else None,
            amount_cents=amount,
            count=n,
            percent=percentage(amount, grand_total),
        )
        for key, (amount, n) in totals.items()
    ]
    rows.sort(key=lambda r: r.amount_cents, reverse=True)
    return rows


def _month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def _month_label(d: date) -> str:
    return d.replace(day=1).strftime("%b %Y")


def _day_label(d: date) -> str:
    return f"{d:%b} {d.day}"


def _bucket(
    expenses: Iterable[Expense],
    key_of: Callable[[date], str],
    label_of: Callable[[date], str],
) -> list[TrendPoint]:
    buckets: dict[str, list] = {}
    for expense in expenses:
        key = key_of(expense.expense_date)
        bucket = buckets.setdefault(key, [expense.expense_date, 0, 0])
        bucket[1] += expense.amount_cents
        bucket[2] += 1
    return [
        TrendPoint(key=key, label=label_of(first), amount_cents=amount, count=n)
        for key, (first, amount, n) in sorted(buckets.items())
    ]


def monthly_totals(expenses: Iterable[Expense]) -> list[TrendPoint]:
    return _bucket(expenses, _month_key, _month_label)


def daily_totals(expenses: Iterable[Expense]) -> list[TrendPoint]:
    return _bucket(expenses, date.isoformat, _day_label)


def trend_window_months(today: date) -> Period:
    return Period("last_12_months", add_months(today, -TREND_MONTHS), today)


def trend_window_days(today: date) -> Period:
    return Period("last_30_days", today - timedelta(days=TREND_DAYS), today)


def monthly_trend(expenses: Iterable[Expense], today: date) -> list[TrendPoint]:
    return monthly_totals(within(expenses, trend_window_months(today)))


def daily_trend(expenses: Iterable[Expense], today: date) -> list[TrendPoint]:
    return daily_totals(within(expenses, trend_window_days(today)))


def average_daily(expenses: Iterable[Expense], today: date) -> float:
    recent = within(expenses, trend_window_days(today))
    return sum_cents(recent) / TREND_DAYS


def spending_by_period(expenses: Sequence[Expense], today: date) -> SpendingByPeriod:
    return SpendingByPeriod(
        this_week=sum_cents(within(expenses, this_week(today))),
        this_month=sum_cents(within(expenses, this_month(today))),
        this_year=sum_cents(within(expenses, this_year(today))),
        last_month=sum_cents(within(expenses, last_month(today))),
        last_year=sum_cents(within(expenses, last_year(today))),
    )
