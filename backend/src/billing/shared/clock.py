"""
Clock and anniversary date arithmetic.

Every date/time read in the billing core goes through a Clock so that
month-end and leap-year behaviour can be exercised with fixed dates.

Usage:
    clock = FixedClock(datetime(2025, 2, 27, 2, 0, tzinfo=timezone.utc))
    tomorrow = clock.today() + timedelta(days=1)
    days = anniversary_days_for(tomorrow)   # {28, 29, 30, 31}
"""

import calendar
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Set


class Clock(ABC):
    """Source of the current time (always timezone-aware UTC)."""

    @abstractmethod
    def now(self) -> datetime:
        pass

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to one instant; `advance()` moves it forward."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    @classmethod
    def on(cls, day: date, hour: int = 2) -> 'FixedClock':
        return cls(datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._instant

    def advance(self, **delta) -> None:
        self._instant += timedelta(**delta)


# -----------------------------------------------------------------------------
# Anniversary math
# -----------------------------------------------------------------------------

def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def effective_anniversary_day(anniversary_day: int, year: int, month: int) -> int:
    """Day of `month` on which an org with `anniversary_day` is charged (29-31 clamp to month end)."""
    if not 1 <= anniversary_day <= 31:
        raise ValueError(f"anniversary_day must be 1-31, got {anniversary_day}")
    return min(anniversary_day, last_day_of_month(year, month))


def is_refresh_day(anniversary_day: int, today: date) -> bool:
    """True when tomorrow is the org's (clamped) anniversary."""
    tomorrow = today + timedelta(days=1)
    return effective_anniversary_day(anniversary_day, tomorrow.year, tomorrow.month) == tomorrow.day


def anniversary_days_for(target: date) -> Set[int]:
    """
    Stored anniversary days that resolve to `target`.

    On the last day of a month every day from target.day to 31 maps onto
    it, otherwise only target.day does.
    """
    if target.day == last_day_of_month(target.year, target.month):
        return set(range(target.day, 32))
    return {target.day}


def billing_period_for(anniversary_day: int, on_or_after: date) -> date:
    """Next effective anniversary date falling on or after `on_or_after`."""
    day = effective_anniversary_day(anniversary_day, on_or_after.year, on_or_after.month)
    if day >= on_or_after.day:
        return on_or_after.replace(day=day)
    next_month = add_months(on_or_after.replace(day=1), 1)
    return next_month.replace(
        day=effective_anniversary_day(anniversary_day, next_month.year, next_month.month)
    )


def add_months(value, months: int):
    """Add calendar months to a date or datetime, clamping to month end (31 Jan + 1 -> 28/29 Feb)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return value.replace(year=year, month=month, day=min(value.day, last_day_of_month(year, month)))
