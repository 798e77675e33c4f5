"""Production day, shift and month windows.

All offset arithmetic of the engine lives here. A production day ``D`` runs
from local 20:00 on ``D`` to local 20:00 on ``D + 1``; its night shift covers
``[20:00, 08:00)`` and its day shift ``[08:00, 20:00)`` of the next calendar
day. Local time is a fixed UTC offset (the plant does not observe DST), so
every window is exactly 24h or 12h long.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

import pytz

from ..core.models import ShiftType
from ..core.time import ensure_utc, format_utc_iso8601

if TYPE_CHECKING:
    from collections.abc import Iterator

__all__ = [
    "DAY_CUTOFF_HOUR",
    "SHIFT_CHANGE_HOUR",
    "MonthWindow",
    "ProductionWindow",
    "ShiftWindow",
    "iter_production_days",
    "last_completed_production_day",
    "local_timezone",
    "month_bounds",
    "previous_production_day",
    "production_day_bounds",
    "production_day_key",
    "production_day_window",
    "shift_bounds",
    "shift_window",
    "shifts_of_production_day",
    "to_local",
]

DAY_CUTOFF_HOUR = 20
SHIFT_CHANGE_HOUR = 8

PRODUCTION_DAY = timedelta(hours=24)
SHIFT_LENGTH = timedelta(hours=12)


@dataclass(frozen=True)
class ProductionWindow:
    """UTC window ``[start, end)`` of one production day.

    Attributes
    ----------
    start : datetime
        Local 20:00 of ``date_key`` in UTC (inclusive)
    end : datetime
        ``start + 24h`` (exclusive)
    date_key : date
        Calendar date on which the production day started
    """

    start: datetime
    end: datetime
    date_key: date

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) < self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_key": self.date_key.isoformat(),
            "start_utc": format_utc_iso8601(self.start),
            "end_utc": format_utc_iso8601(self.end),
        }


@dataclass(frozen=True)
class ShiftWindow:
    """UTC window ``[start, end)`` of one 12h shift.

    ``production_date`` is the calendar date the shift started on, so a night
    shift that ends at 08:00 on ``D + 1`` carries ``D``.
    """

    shift_type: ShiftType
    production_date: date
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) < self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "shift_type": self.shift_type.value,
            "production_date": self.production_date.isoformat(),
            "start_utc": format_utc_iso8601(self.start),
            "end_utc": format_utc_iso8601(self.end),
        }


@dataclass(frozen=True)
class MonthWindow:
    """Production month: from the last day boundary at or before the 1st."""

    year: int
    month: int
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) < self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": f"{self.year:04d}-{self.month:02d}",
            "start_utc": format_utc_iso8601(self.start),
            "end_utc": format_utc_iso8601(self.end),
        }


def local_timezone(tz_offset_hours: int) -> Any:
    """Fixed-offset tzinfo for the plant's local time."""
    return pytz.FixedOffset(int(tz_offset_hours * 60))


def to_local(instant: datetime, tz_offset_hours: int) -> datetime:
    """Convert an instant to plant local civil time (aware)."""
    return ensure_utc(instant).astimezone(local_timezone(tz_offset_hours))


def _local_to_utc(day: date, at: time, tz_offset_hours: int) -> datetime:
    tz = local_timezone(tz_offset_hours)
    local = tz.localize(datetime.combine(day, at))
    return local.astimezone(pytz.UTC)


def production_day_key(instant: datetime, tz_offset_hours: int = 5) -> date:
    """Calendar date on which the production day containing ``instant`` began.

    Example
    -------
    >>> from datetime import timezone
    >>> # 02:00 UTC = 07:00 local (UTC+5) on Oct 9 -> still production day Oct 8
    >>> production_day_key(datetime(2025, 10, 9, 2, 0, tzinfo=timezone.utc), 5)
    datetime.date(2025, 10, 8)
    """
    local = to_local(instant, tz_offset_hours)
    if local.hour < DAY_CUTOFF_HOUR:
        return local.date() - timedelta(days=1)
    return local.date()


def production_day_window(day: date, tz_offset_hours: int = 5) -> ProductionWindow:
    """Window of the production day that started on local ``day`` at 20:00."""
    start = _local_to_utc(day, time(DAY_CUTOFF_HOUR), tz_offset_hours)
    return ProductionWindow(start=start, end=start + PRODUCTION_DAY, date_key=day)


def production_day_bounds(instant: datetime, tz_offset_hours: int = 5) -> ProductionWindow:
    """Production day containing ``instant``.

    If the local hour is before 20:00 the day started the previous calendar
    day at 20:00 local; otherwise it started today at 20:00 local.

    Parameters
    ----------
    instant
        Any instant (naive values are taken as UTC)
    tz_offset_hours
        Plant offset from UTC

    Returns
    -------
    ProductionWindow
        ``[start, start + 24h)`` in UTC
    """
    return production_day_window(production_day_key(instant, tz_offset_hours), tz_offset_hours)


def previous_production_day(instant: datetime, tz_offset_hours: int = 5) -> ProductionWindow:
    """Production day immediately before the one containing ``instant``."""
    key = production_day_key(instant, tz_offset_hours)
    return production_day_window(key - timedelta(days=1), tz_offset_hours)


def last_completed_production_day(now: datetime, tz_offset_hours: int = 5) -> date:
    """Key of the most recent production day that has fully ended at ``now``."""
    return production_day_key(now, tz_offset_hours) - timedelta(days=1)


def shift_window(instant: datetime, tz_offset_hours: int = 5) -> ShiftWindow:
    """Shift containing ``instant``.

    Local hour in ``[8, 20)`` is the day shift of the same calendar date.
    Any other hour is the night shift, attributed to the date on which it
    started (one day back when the local hour is before 08:00).
    """
    local = to_local(instant, tz_offset_hours)
    if SHIFT_CHANGE_HOUR <= local.hour < DAY_CUTOFF_HOUR:
        return shift_bounds(local.date(), ShiftType.DAY, tz_offset_hours)
    if local.hour < SHIFT_CHANGE_HOUR:
        return shift_bounds(local.date() - timedelta(days=1), ShiftType.NIGHT, tz_offset_hours)
    return shift_bounds(local.date(), ShiftType.NIGHT, tz_offset_hours)


def shift_bounds(production_date: date, shift_type: ShiftType, tz_offset_hours: int = 5) -> ShiftWindow:
    """Exact UTC window of a shift that started on ``production_date``.

    Day shift: 08:00-20:00 local. Night shift: 20:00 local to 08:00 local on
    the following calendar day.
    """
    start_hour = SHIFT_CHANGE_HOUR if shift_type is ShiftType.DAY else DAY_CUTOFF_HOUR
    start = _local_to_utc(production_date, time(start_hour), tz_offset_hours)
    return ShiftWindow(
        shift_type=shift_type,
        production_date=production_date,
        start=start,
        end=start + SHIFT_LENGTH,
    )


def shifts_of_production_day(day: date, tz_offset_hours: int = 5) -> tuple[ShiftWindow, ShiftWindow]:
    """Night and day shift making up production day ``day``, in time order.

    The night shift starts with the production day; the day shift physically
    runs on the next calendar date.
    """
    night = shift_bounds(day, ShiftType.NIGHT, tz_offset_hours)
    day_shift = shift_bounds(day + timedelta(days=1), ShiftType.DAY, tz_offset_hours)
    return night, day_shift


def month_bounds(instant: datetime, tz_offset_hours: int = 5) -> MonthWindow:
    """Production month containing ``instant``.

    Anchored to the production-day cutoff, not calendar midnight: the month
    starts at 20:00 local on the last day of the previous month, i.e. the
    last production-day boundary at or before the 1st.

    Parameters
    ----------
    instant
        Any instant in the month
    tz_offset_hours
        Plant offset from UTC

    Returns
    -------
    MonthWindow
        ``[start, end)`` in UTC
    """
    # Production day D lies in the month of D + 1 (it ends on that date).
    anchor = production_day_key(instant, tz_offset_hours) + timedelta(days=1)
    first = date(anchor.year, anchor.month, 1)
    if first.month == 12:
        next_first = date(first.year + 1, 1, 1)
    else:
        next_first = date(first.year, first.month + 1, 1)

    start = production_day_window(first - timedelta(days=1), tz_offset_hours).start
    end = production_day_window(next_first - timedelta(days=1), tz_offset_hours).start
    return MonthWindow(year=first.year, month=first.month, start=start, end=end)


def iter_production_days(first: date, last: date, tz_offset_hours: int = 5) -> Iterator[ProductionWindow]:
    """Yield production day windows for keys ``first`` through ``last`` inclusive."""
    day = first
    while day <= last:
        yield production_day_window(day, tz_offset_hours)
        day += timedelta(days=1)
