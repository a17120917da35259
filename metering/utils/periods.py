"""Calendar arithmetic for billing periods."""

import math
from datetime import date, datetime, timezone


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def billing_months(period_start: datetime, period_end: datetime) -> list[date]:
    """
    First days of every calendar month overlapping ``[period_start, period_end)``.

    A period from 15 Jan to 15 Feb yields ``[Jan 1, Feb 1]``. The end bound is
    exclusive, so a period ending exactly at midnight on 1 Mar does not pull
    in March.
    """
    if period_end <= period_start:
        raise ValueError("period_end must be after period_start")

    start = period_start.astimezone(timezone.utc)
    end = period_end.astimezone(timezone.utc)

    months = []
    current = month_start(start.date())
    while _utc_midnight(current) < end:
        months.append(current)
        current = next_month(current)
    return months


def months_bounds(months: list[date]) -> tuple[datetime, datetime]:
    """Half-open UTC datetime range covering a contiguous list of months."""
    if not months:
        raise ValueError("months must not be empty")
    return _utc_midnight(min(months)), _utc_midnight(next_month(max(months)))


def align_to_minute(start: datetime, end: datetime) -> tuple[int, int]:
    """Unix bounds floored/ceiled to whole minutes, as meter summaries require."""
    start_ts = math.floor(start.timestamp() / 60) * 60
    end_ts = math.ceil(end.timestamp() / 60) * 60
    return start_ts, end_ts


def _utc_midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
