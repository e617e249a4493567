import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import get_settings

# Bounds used when a report is asked for an open range.
DEFAULT_START = date(1900, 1, 1)
DEFAULT_END = date(2500, 1, 1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def month_label(year: int, month: int) -> str:
    return f"{year:04d}/{month:02d}"


def open_range(start: Optional[date], end: Optional[date]) -> tuple[date, date]:
    return (start or DEFAULT_START, end or DEFAULT_END)


def datetime_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Half-open datetime interval covering every moment of ``start``..``end``."""
    return (
        datetime.combine(start, time.min),
        datetime.combine(end + timedelta(days=1), time.min),
    )


def _this_month(today: date) -> tuple[date, date]:
    return month_start(today.year, today.month), month_end(today.year, today.month)


def _last_month(today: date) -> tuple[date, date]:
    previous = today.replace(day=1) - timedelta(days=1)
    return month_start(previous.year, previous.month), previous


def _this_year(today: date) -> tuple[date, date]:
    return date(today.year, 1, 1), date(today.year, 12, 31)


NAMED_PERIODS: dict[str, Callable[[date], tuple[date, date]]] = {
    "this_month": _this_month,
    "last_month": _last_month,
    "this_year": _this_year,
}


def _parse_day(value: Optional[str], default: date) -> date:
    return date.fromisoformat(value) if value else default


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    """Turn request parameters into a concrete date range.

    Without a named period, ``start`` and ``end`` select a custom range and a
    missing side falls back to the open-range default.
    """
    if not period or period == "all":
        if not start and not end:
            return Period("all", DEFAULT_START, DEFAULT_END)
        return Period(
            "custom", _parse_day(start, DEFAULT_START), _parse_day(end, DEFAULT_END)
        )
    if period == "custom":
        if not (start and end):
            raise ValueError("Custom period requires start and end dates")
        custom = Period("custom", date.fromisoformat(start), date.fromisoformat(end))
        if custom.start > custom.end:
            raise ValueError("Start date must not be after end date")
        return custom
    if period not in NAMED_PERIODS:
        raise ValueError(f"Unknown period: {period}")
    first, last = NAMED_PERIODS[period](today or local_today())
    return Period(period, first, last)
