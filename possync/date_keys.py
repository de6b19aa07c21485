"""
Date-key utilities shared by the cache, the sync service and the dashboard.

Every cache entry is addressed by a period kind plus a canonical date key:

    today / custom  -> YYYY-MM-DD
    this_week       -> YYYY-wWW   (ISO year and ISO week)
    this_month      -> YYYY-MM
    this_year       -> YYYY

All validators raise ValidationError on invalid input.
"""
import calendar
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List, Tuple

from possync.exceptions import ValidationError

DAY_FORMAT = "%Y-%m-%d"
MONTH_FORMAT = "%Y-%m"

# Sentinel for "walk back to the earliest configured year"
ALL_MONTHS = -1


class PeriodKind(str, Enum):
    """Granularity of a dashboard view."""

    TODAY = "today"
    THIS_WEEK = "this_week"
    THIS_MONTH = "this_month"
    THIS_YEAR = "this_year"
    CUSTOM = "custom"

    @property
    def is_single_day(self) -> bool:
        return self in (PeriodKind.TODAY, PeriodKind.CUSTOM)


def parse_period(value) -> PeriodKind:
    """Parse a period kind name ("today", "this_month", ...)."""
    if isinstance(value, PeriodKind):
        return value
    try:
        return PeriodKind(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in PeriodKind)
        raise ValidationError("period", f"Must be one of: {valid}", value)


def parse_day_key(value: str, field: str = "date") -> date:
    """
    Parse a YYYY-MM-DD day key.

    Raises:
        ValidationError: If the key is empty or malformed
    """
    if not value or not isinstance(value, str):
        raise ValidationError(field, "Day key is required", value)
    try:
        return datetime.strptime(value, DAY_FORMAT).date()
    except ValueError:
        raise ValidationError(field, "Invalid day key. Expected YYYY-MM-DD", value)


def parse_month_key(value: str) -> date:
    """Parse a YYYY-MM month key into the first day of that month."""
    if not value or not isinstance(value, str):
        raise ValidationError("month", "Month key is required", value)
    try:
        return datetime.strptime(value, MONTH_FORMAT).date()
    except ValueError:
        raise ValidationError("month", "Invalid month key. Expected YYYY-MM", value)


def validate_date_range(start_date: str, end_date: str) -> Tuple[date, date]:
    """Validate that both are day keys and start <= end."""
    start = parse_day_key(start_date, "start_date")
    end = parse_day_key(end_date, "end_date")
    if start > end:
        raise ValidationError("start_date", f"Must not be after end_date ({end_date})", start_date)
    return start, end


def day_key(d: date) -> str:
    return d.strftime(DAY_FORMAT)


def month_key(d: date) -> str:
    return d.strftime(MONTH_FORMAT)


def date_key(period: PeriodKind, ref: date) -> str:
    """Canonical cache date key for a period kind and reference date."""
    period = parse_period(period)
    if period == PeriodKind.THIS_WEEK:
        iso_year, iso_week, _ = ref.isocalendar()
        return f"{iso_year:04d}-w{iso_week:02d}"
    if period == PeriodKind.THIS_MONTH:
        return month_key(ref)
    if period == PeriodKind.THIS_YEAR:
        return f"{ref.year:04d}"
    return day_key(ref)


def date_range(period: PeriodKind, ref: date) -> Tuple[str, str]:
    """
    (start_date, end_date) day keys covering the period containing ``ref``.

    Weeks run Monday through Sunday.
    """
    period = parse_period(period)
    if period == PeriodKind.THIS_WEEK:
        start = ref - timedelta(days=ref.weekday())
        return day_key(start), day_key(start + timedelta(days=6))
    if period == PeriodKind.THIS_MONTH:
        return month_range(month_key(ref))
    if period == PeriodKind.THIS_YEAR:
        return day_key(date(ref.year, 1, 1)), day_key(date(ref.year, 12, 31))
    return day_key(ref), day_key(ref)


def month_range(month: str) -> Tuple[str, str]:
    """First and last day keys of a YYYY-MM month."""
    first = parse_month_key(month)
    last_day = calendar.monthrange(first.year, first.month)[1]
    return day_key(first), day_key(first.replace(day=last_day))


def is_current_period(period: PeriodKind, ref: date, today: date) -> bool:
    """True when ``ref`` falls in the same period as ``today``."""
    return date_key(period, ref) == date_key(period, today)


def _add_months(d: date, months: int) -> date:
    total = d.year * 12 + (d.month - 1) + months
    year, month = divmod(total, 12)
    last_day = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(d.day, last_day))


def shift(period: PeriodKind, ref: date, direction: int) -> date:
    """Move ``ref`` by ``direction`` whole periods (negative = back in time)."""
    period = parse_period(period)
    if period == PeriodKind.THIS_WEEK:
        return ref + timedelta(weeks=direction)
    if period == PeriodKind.THIS_MONTH:
        return _add_months(ref, direction)
    if period == PeriodKind.THIS_YEAR:
        return _add_months(ref, 12 * direction)
    return ref + timedelta(days=direction)


def build_month_units(months_back: int, today: date, earliest_year: int) -> List[str]:
    """
    Months to sync, newest first.

    ``ALL_MONTHS`` walks back from the current month to January of
    ``earliest_year`` inclusive; otherwise exactly ``months_back`` months
    ending at the current month.
    """
    current = today.replace(day=1)
    units = []

    if months_back == ALL_MONTHS:
        floor = date(earliest_year, 1, 1)
        while current >= floor:
            units.append(month_key(current))
            current = _add_months(current, -1)
        return units

    if months_back < 0:
        raise ValidationError("months_back", "Must be positive or ALL_MONTHS (-1)", months_back)

    for _ in range(months_back):
        units.append(month_key(current))
        current = _add_months(current, -1)
    return units


def trailing_days(today: date, count: int, clip_to_month: bool = True) -> List[str]:
    """The last ``count`` day keys ending at ``today``, newest first."""
    days = []
    for offset in range(count):
        d = today - timedelta(days=offset)
        if clip_to_month and d.month != today.month:
            break
        days.append(day_key(d))
    return days
