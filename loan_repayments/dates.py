"""
Calendar Date Helpers

Calendar-month arithmetic used for installment due dates.
"""

from datetime import date, datetime
from typing import Union
import calendar


def add_months(start_date: date, months: int) -> date:
    """
    Add months to a date, clamping the day to the end of the target month

    Days past the end of the target month are clamped rather than carried into
    the following month: 2024-01-31 plus one month is 2024-02-29, not 2024-03-02.
    """
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_date(value: Union[date, str]) -> date:
    """
    Coerce a date or an ISO ``YYYY-MM-DD`` string into a date

    Datetimes are truncated to their date part.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip())
    raise ValueError(f"Cannot interpret {value!r} as a date")
