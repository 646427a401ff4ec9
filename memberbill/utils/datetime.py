"""Calendar helpers shared by the position and proration calculators.

Month arithmetic clamps the day of month to the target month's length, so
``add_months(date(2024, 1, 31), 1)`` is ``date(2024, 2, 29)``.
"""

import calendar
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def utc_today() -> date:
    return utc_now().date()


def start_of_day(day: date) -> datetime:
    """Midnight UTC at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=UTC)


def add_months(day: date, months: int) -> date:
    """Shift ``day`` by whole calendar months, clamping the day of month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def months_between(start: date, end: date) -> Decimal:
    """Fractional, day-accurate number of months from ``start`` to ``end``.

    Whole calendar months are stepped from ``start`` (anchored on its day of
    month); the leftover days are divided by the length of the month interval
    they fall in. Returns 0 when ``end <= start``.

    >>> months_between(date(2024, 4, 1), date(2024, 6, 16))
    Decimal('2.5')
    """
    if end <= start:
        return Decimal("0")

    whole = (end.year - start.year) * 12 + (end.month - start.month)
    while whole > 0 and add_months(start, whole) > end:
        whole -= 1
    while add_months(start, whole + 1) <= end:
        whole += 1

    anchor = add_months(start, whole)
    next_anchor = add_months(start, whole + 1)
    leftover_days = (end - anchor).days
    interval_days = (next_anchor - anchor).days
    return Decimal(whole) + Decimal(leftover_days) / Decimal(interval_days)


def fiscal_year_bounds(as_of: date, start_month: int = 4, start_day: int = 1) -> tuple[date, date]:
    """Half-open ``[start, end)`` fiscal year containing ``as_of``.

    With the defaults the year runs April 1 to March 31, so ``end`` is the
    following April 1.
    """
    start = date(as_of.year, start_month, start_day)
    if as_of < start:
        start = date(as_of.year - 1, start_month, start_day)
    return start, add_months(start, 12)


def day_after(day: date) -> date:
    return day + timedelta(days=1)
