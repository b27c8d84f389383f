from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def window(self) -> tuple[datetime, datetime]:
        """Half-open ``[start 00:00, day after end 00:00)`` in local time."""
        return (
            datetime.combine(self.start, time.min),
            datetime.combine(self.end + timedelta(days=1), time.min),
        )


def local_now() -> datetime:
    """Naive wall-clock time in the configured timezone; ledger rows store this."""
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = date(year, month, 1)
    end = date(year, month, days_in_month(year, month))
    return Period("month", start, end)


def month_window(year: int, month: int) -> tuple[datetime, datetime]:
    return month_period(year, month).window


def day_window(day: date) -> tuple[datetime, datetime]:
    return Period("day", day, day).window


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        year, month = previous_month(today.year, today.month)
        prev = month_period(year, month)
        return Period("last_month", prev.start, prev.end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    current = month_period(today.year, today.month)
    return Period("this_month", current.start, current.end)
