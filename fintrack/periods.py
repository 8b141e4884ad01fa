from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta

from fintrack.errors import ValidationError


@dataclass(frozen=True)
class DateRange:
    """Half-open range: ``start`` is included, ``end`` is not."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError("start must be on or before end.")

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def iter_months(start_value: date, end_value: date) -> list[date]:
    months: list[date] = []
    cursor = month_start(start_value)
    end_month = month_start(end_value)
    while cursor <= end_month:
        months.append(cursor)
        cursor = shift_month(cursor, 1)
    return months


def month_range(value: date) -> DateRange:
    start = month_start(value)
    return DateRange(start, shift_month(start, 1))


def this_month(today: date) -> DateRange:
    return month_range(today)


def last_n_months(today: date, months: int) -> DateRange:
    if months <= 0:
        raise ValidationError("months must be greater than zero.")
    return DateRange(shift_month_keep_day(today, -months), today + timedelta(days=1))


def this_quarter(today: date) -> DateRange:
    start = date(today.year, (today.month - 1) // 3 * 3 + 1, 1)
    return DateRange(start, shift_month(start, 3))


def this_year(today: date) -> DateRange:
    return DateRange(date(today.year, 1, 1), date(today.year + 1, 1, 1))


def named_window(name: str, today: date) -> DateRange:
    normalized = name.strip().lower()
    if normalized == "this_month":
        return this_month(today)
    if normalized == "3months":
        return last_n_months(today, 3)
    if normalized == "6months":
        return last_n_months(today, 6)
    if normalized == "1year":
        return last_n_months(today, 12)
    if normalized == "quarterly":
        return this_quarter(today)
    if normalized == "yearly":
        return this_year(today)
    raise ValidationError(f"Invalid window: {name}")
