"""Date helpers for subscription windows."""
import calendar
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: date, months: int) -> date:
    """
    Shift a date by whole months, clamping to the last day of the target month.

    Args:
        value: Start date
        months: Number of months to add

    Returns:
        Shifted date
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_years(value: date, years: int) -> date:
    """Shift a date by whole years (Feb 29 becomes Feb 28)."""
    return add_months(value, years * 12)


def from_timestamp(value: int | None) -> datetime | None:
    """Convert a Stripe unix timestamp to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
