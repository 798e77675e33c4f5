"""Reading builders shared by unit and integration tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from meterledger.core.models import MeterReading

# Plant local time used throughout the suite (UTC+5, no DST)
PLANT_TZ = timezone(timedelta(hours=5))


def local_dt(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    """Plant local civil time converted to an aware UTC datetime."""
    return datetime(year, month, day, hour, minute, second, tzinfo=PLANT_TZ).astimezone(timezone.utc)


def linear_readings(
    start: datetime,
    end: datetime,
    start_value: float,
    end_value: float,
    *,
    step_minutes: int = 5,
    rate: float | None = None,
) -> list[MeterReading]:
    """Readings every ``step_minutes`` from ``start`` to ``end`` inclusive, rising linearly."""
    steps = int((end - start) / timedelta(minutes=step_minutes))
    if rate is None:
        hours = (end - start) / timedelta(hours=1)
        rate = (end_value - start_value) / hours if hours else 0.0
    return [
        MeterReading(
            timestamp=start + timedelta(minutes=step_minutes * i),
            cumulative_value=start_value + (end_value - start_value) * i / steps,
            instantaneous_rate=rate,
        )
        for i in range(steps + 1)
    ]


def series(start: datetime, values: list[float], *, step_minutes: int = 5, rate: float = 0.0) -> list[MeterReading]:
    """Readings with explicit counter values at a fixed cadence."""
    return [
        MeterReading(
            timestamp=start + timedelta(minutes=step_minutes * i),
            cumulative_value=value,
            instantaneous_rate=rate,
        )
        for i, value in enumerate(values)
    ]


def production_day(year: int = 2025, month: int = 10, day: int = 7) -> list[MeterReading]:
    """Production day starting on the given date: 0 t at 20:00, 430 t at 08:00, 1020 t at 20:00 (local)."""
    start = local_dt(year, month, day, 20)
    change = start + timedelta(hours=12)
    end = start + timedelta(hours=24)
    night = linear_readings(start, change, 0.0, 430.0)
    day_shift = linear_readings(change, end, 430.0, 1020.0)
    # Both halves contain the 08:00 reading
    return night + day_shift[1:]


def consecutive_days(year: int, month: int, day: int, count: int) -> list[MeterReading]:
    """``count`` back-to-back production days of 1020 t each on one rising counter."""
    first = production_day(year, month, day)
    readings = list(first)
    for offset in range(1, count):
        readings.extend(
            MeterReading(
                timestamp=r.timestamp + timedelta(days=offset),
                cumulative_value=r.cumulative_value + 1020.0 * offset,
                instantaneous_rate=r.instantaneous_rate,
            )
            for r in first[1:]
        )
    return readings
