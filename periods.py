from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class PeriodUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


@dataclass(frozen=True)
class Period:
    """Half-open window ``[start, end)``; ``end`` is None when open-ended."""

    slug: str
    start: datetime
    end: Optional[datetime]


def local_now() -> datetime:
    """Current wall-clock time in the configured zone, as a naive datetime."""
    zone = ZoneInfo(get_settings().timezone)
    return datetime.now(zone).replace(tzinfo=None)


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    zone = ZoneInfo(get_settings().timezone)
    return value.astimezone(zone).replace(tzinfo=None)


def resolve_period(period: Optional[str], *, now: Optional[datetime] = None) -> Period:
    now = now or local_now()
    try:
        unit = PeriodUnit(period or PeriodUnit.month.value)
    except ValueError as exc:
        raise ValueError(
            "Invalid period; expected one of day, week, month, year"
        ) from exc

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == PeriodUnit.day:
        return Period(unit.value, midnight, midnight + timedelta(days=1))
    if unit == PeriodUnit.week:
        return Period(unit.value, now - timedelta(days=7), None)
    if unit == PeriodUnit.year:
        first = midnight.replace(month=1, day=1)
        return Period(unit.value, first, first.replace(year=first.year + 1))

    # this month
    first = midnight.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(unit.value, first, next_month)
