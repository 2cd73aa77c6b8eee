"""
Month Arithmetic Module

Calendar helpers shared by the loan and committee engines. Loans count months
relative to their start instant; committee batches count calendar months from
January of the batch year.
"""

from datetime import datetime, timezone
import calendar

MONTH_NAMES = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"
]


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so instants always compare"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(start: datetime, months: int) -> datetime:
    """Add months to an instant, clamping the day at month end (Jan 31 + 1 -> Feb 28/29)"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def whole_months_between(start: datetime, end: datetime) -> int:
    """
    Number of whole months from start to end, floored and never negative.

    A month is complete once ``add_months(start, n)`` has been reached, so
    the result n always satisfies ``add_months(start, n) <= end <
    add_months(start, n + 1)`` when end is not before start.
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if end <= start:
        return 0

    months = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, months) > end:
        months -= 1
    return max(0, months)


def batch_month_index(batch_year: int, as_of: datetime) -> int:
    """
    Zero-based month index of as_of within a batch anchored at January of batch_year.

    Negative when as_of falls before the batch starts.
    """
    as_of = ensure_utc(as_of)
    return (as_of.year - batch_year) * 12 + (as_of.month - 1)


def batch_months_elapsed(batch_year: int, as_of: datetime) -> int:
    """Calendar months of the batch that have started by as_of, including the current one"""
    return max(0, batch_month_index(batch_year, as_of) + 1)


def month_label(index: int) -> str:
    """Human label for a batch month index, e.g. 13 -> 'Feb (Year 2)'"""
    year_offset, month = divmod(index, 12)
    return f"{MONTH_NAMES[month]} (Year {year_offset + 1})"
