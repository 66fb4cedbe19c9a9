"""
Calendar arithmetic used by payment terms and recurring schedules.

Pure functions, zero I/O.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def add_months(day: date, months: int) -> date:
    """
    Add calendar months, clamping the day to the end of the target month.

    Examples:
        add_months(date(2024, 1, 31), 1) -> date(2024, 2, 29)
        add_months(date(2023, 1, 31), 1) -> date(2023, 2, 28)
        add_months(date(2024, 11, 30), 3) -> date(2025, 2, 28)
    """
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def add_years(day: date, years: int) -> date:
    """Add calendar years; Feb 29 clamps to Feb 28 in non-leap years."""
    return add_months(day, years * 12)
