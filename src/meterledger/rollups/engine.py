"""Per-day, per-shift and monthly production rollups.

Rollups are recomputed from raw readings on every call. Persisted shift
aggregates are never consulted here, so a defective stored total cannot leak
into a rollup.
"""

from __future__ import annotations

import math
import statistics
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from ..config.settings import EngineSettings
from ..core.errors import AnomalousShiftTotal
from ..core.models import (
    ElapsedBasis,
    MeterReading,
    ProductionDay,
    ProductionStatus,
    ShiftAggregate,
    ShiftType,
)
from ..core.time import ensure_utc, get_current_utc, hours_between
from ..observability import get_logger, timing_context
from .aggregator import group_by_production_day
from .deltas import DeltaPolicy, DeltaReport, compute_deltas
from .time_windows import (
    MonthWindow,
    month_bounds,
    production_day_key,
    production_day_window,
    shift_bounds,
    shifts_of_production_day,
    to_local,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

__all__ = [
    "MonthlyRollup",
    "RollupEngine",
    "elapsed_hours",
    "readings_in_window",
    "status_for_speed",
]


@dataclass(frozen=True)
class MonthlyRollup:
    """Month totals.

    Attributes
    ----------
    total : float
        Production of every day, including zero and excluded days
    average_daily : float
        Mean over counted days only
    days_count : int
        Days supplied
    counted_days : int
        Days with production that are not maintenance/holiday days
    plan_percent : float
        Counted production against ``daily_target * counted_days``
    """

    total: float
    average_daily: float
    days_count: int
    counted_days: int
    plan_percent: float
    month: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": self.month,
            "total": self.total,
            "average_daily": self.average_daily,
            "days_count": self.days_count,
            "counted_days": self.counted_days,
            "plan_percent": self.plan_percent,
        }


def readings_in_window(
    readings: Iterable[MeterReading],
    start: datetime,
    end: datetime,
    *,
    inclusive_end: bool = False,
) -> list[MeterReading]:
    """Readings with ``start <= timestamp < end`` (``<= end`` when inclusive)."""
    if inclusive_end:
        return [r for r in readings if start <= r.timestamp <= end]
    return [r for r in readings if start <= r.timestamp < end]


def elapsed_hours(
    basis: ElapsedBasis,
    window_start: datetime,
    window_end: datetime,
    readings: Sequence[MeterReading],
    now: datetime,
) -> float:
    """Elapsed time of a (possibly in-progress) window.

    Parameters
    ----------
    basis
        ``WINDOW``: ``now - window_start``, clamped to the window.
        ``SPAN``: last reading minus first reading.
    window_start, window_end
        Window bounds (UTC)
    readings
        Sorted readings belonging to the window
    now
        Evaluation instant

    Returns
    -------
    float
        Elapsed hours (never negative)
    """
    if basis is ElapsedBasis.SPAN:
        if len(readings) < 2:
            return 0.0
        return hours_between(readings[0].timestamp, readings[-1].timestamp)

    clamped = min(max(ensure_utc(now), window_start), window_end)
    return hours_between(window_start, clamped)


def status_for_speed(current_speed: float, hourly_target: float) -> ProductionStatus:
    """Normal at 90% of plan speed or better, Warning from 80%, else Danger."""
    if current_speed >= hourly_target * 0.9:
        return ProductionStatus.NORMAL
    if current_speed >= hourly_target * 0.8:
        return ProductionStatus.WARNING
    return ProductionStatus.DANGER


class RollupEngine:
    """Computes production statistics from raw readings.

    Example
    -------
    >>> engine = RollupEngine(EngineSettings(daily_target_tonnes=1200))
    >>> day = engine.daily_stats(readings, date(2025, 10, 8))
    >>> day.progress_percent
    85.0
    """

    def __init__(self, settings: EngineSettings | None = None, *, policy: DeltaPolicy | None = None) -> None:
        self.settings = settings or EngineSettings()
        self.policy = policy or DeltaPolicy.from_settings(self.settings)
        self.log = get_logger("rollup")

    @property
    def tz_offset(self) -> int:
        return self.settings.timezone_offset_hours

    def _report(self, readings: Iterable[MeterReading], report: DeltaReport | None) -> DeltaReport:
        return report if report is not None else compute_deltas(readings, self.policy)

    def daily_stats(
        self,
        readings: Iterable[MeterReading],
        date_key: date | None = None,
        *,
        now: datetime | None = None,
        basis: ElapsedBasis = ElapsedBasis.WINDOW,
        report: DeltaReport | None = None,
        contained: bool = True,
    ) -> ProductionDay:
        """Statistics for one production day.

        ``readings`` should cover ``[day_start, day_end]``; the reading taken
        exactly at ``day_end`` closes the last interval of the day. Readings
        outside the day are ignored.

        Parameters
        ----------
        readings
            Readings of the production day
        date_key
            Production day; derived from the earliest reading when omitted
        now
            Evaluation instant for in-progress days (default: current time)
        basis
            Elapsed-time basis for ``average_speed``
        report
            Precomputed delta report (optional)
        contained
            Count only deltas lying entirely inside the day and its shifts
            (default). ``False`` attributes each delta by its midpoint.

        Returns
        -------
        ProductionDay
            Zero totals when the day has no readings
        """
        report = self._report(readings, report)
        now = ensure_utc(now) if now is not None else get_current_utc()

        if date_key is None:
            anchor = report.readings[0].timestamp if report.readings else now
            date_key = production_day_key(anchor, self.tz_offset)

        window = production_day_window(date_key, self.tz_offset)
        night, day = shifts_of_production_day(date_key, self.tz_offset)
        night_total = report.total_between(night.start, night.end, contained=contained)
        day_total = report.total_between(day.start, day.end, contained=contained)
        # A delta straddling 08:00 counts for the day but for neither shift
        total = report.total_between(window.start, window.end, contained=contained)

        in_day = readings_in_window(report.readings, window.start, window.end)
        spanning = readings_in_window(report.readings, window.start, window.end, inclusive_end=True)
        current_speed = in_day[-1].instantaneous_rate if in_day else 0.0

        hours = elapsed_hours(basis, window.start, window.end, spanning, now)
        span_hours = elapsed_hours(ElapsedBasis.SPAN, window.start, window.end, spanning, now)

        result = ProductionDay(
            date_key=date_key.isoformat(),
            day_shift_total=day_total,
            night_shift_total=night_total,
            total_production=total,
            average_speed=total / hours if hours > 0 else 0.0,
            current_speed=current_speed,
            progress_percent=total / self.settings.daily_target_tonnes * 100,
            status=status_for_speed(current_speed, self.settings.hourly_target_tonnes),
            sample_count=len(in_day),
            elapsed_hours=hours,
            elapsed_basis=basis,
            span_average_speed=total / span_hours if span_hours > 0 else 0.0,
            anomaly_count=len(report.anomalies_between(window.start, window.end)),
        )

        if not in_day:
            self.log.info("No readings for production day {}; reporting zero totals", result.date_key)
        return result

    def shift_rollup(
        self,
        readings: Iterable[MeterReading],
        production_date: date,
        shift_type: ShiftType,
        *,
        now: datetime | None = None,
        basis: ElapsedBasis = ElapsedBasis.WINDOW,
        report: DeltaReport | None = None,
        contained: bool = True,
    ) -> ProductionDay:
        """Statistics for one 12h shift, measured against the shift target.

        ``production_date`` is the calendar date the shift started on. Only
        deltas lying entirely inside the shift count unless ``contained=False``.
        """
        report = self._report(readings, report)
        now = ensure_utc(now) if now is not None else get_current_utc()
        shift = shift_bounds(production_date, shift_type, self.tz_offset)

        total = report.total_between(shift.start, shift.end, contained=contained)
        in_shift = readings_in_window(report.readings, shift.start, shift.end)
        spanning = readings_in_window(report.readings, shift.start, shift.end, inclusive_end=True)
        current_speed = in_shift[-1].instantaneous_rate if in_shift else 0.0
        hours = elapsed_hours(basis, shift.start, shift.end, spanning, now)
        span_hours = elapsed_hours(ElapsedBasis.SPAN, shift.start, shift.end, spanning, now)

        return ProductionDay(
            date_key=production_date.isoformat(),
            day_shift_total=total if shift_type is ShiftType.DAY else 0.0,
            night_shift_total=total if shift_type is ShiftType.NIGHT else 0.0,
            total_production=total,
            average_speed=total / hours if hours > 0 else 0.0,
            current_speed=current_speed,
            progress_percent=total / self.settings.shift_target_tonnes * 100,
            status=status_for_speed(current_speed, self.settings.hourly_target_tonnes),
            sample_count=len(in_shift),
            elapsed_hours=hours,
            elapsed_basis=basis,
            span_average_speed=total / span_hours if span_hours > 0 else 0.0,
            anomaly_count=len(report.anomalies_between(shift.start, shift.end)),
        )

    def monthly_rollup(self, days: Iterable[ProductionDay], *, month: str | None = None) -> MonthlyRollup:
        """Month totals over production days.

        Days with zero production and configured maintenance/holiday days stay
        in the total but are left out of the averaging denominator.
        """
        days = list(days)
        total = sum(d.total_production for d in days)
        counted = [
            d
            for d in days
            if d.total_production > 0 and not self.settings.is_excluded(date.fromisoformat(d.date_key))
        ]
        counted_total = sum(d.total_production for d in counted)
        plan = self.settings.daily_target_tonnes * len(counted)

        return MonthlyRollup(
            total=total,
            average_daily=counted_total / len(counted) if counted else 0.0,
            days_count=len(days),
            counted_days=len(counted),
            plan_percent=counted_total / plan * 100 if plan > 0 else 0.0,
            month=month,
        )

    def rollup_days(
        self,
        readings: Iterable[MeterReading],
        *,
        now: datetime | None = None,
        basis: ElapsedBasis = ElapsedBasis.WINDOW,
    ) -> dict[date, ProductionDay]:
        """Daily statistics for every production day present in ``readings``.

        Days are independent pure computations over one shared, immutable
        delta report, so they are fanned out to a thread pool and merged by
        key.
        """
        report = compute_deltas(readings, self.policy)
        groups = group_by_production_day(report.readings, self.tz_offset, self.policy, report=report)
        now = ensure_utc(now) if now is not None else get_current_utc()

        results: dict[date, ProductionDay] = {}
        with timing_context("rollup_days", component="rollup", days=len(groups)) as ctx:
            with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
                future_to_key = {
                    executor.submit(self.daily_stats, (), key, now=now, basis=basis, report=report): key
                    for key in groups
                }
                for future in as_completed(future_to_key):
                    results[future_to_key[future]] = future.result()
            ctx["computed"] = len(results)

        return dict(sorted(results.items()))

    def month_rollup(
        self,
        readings: Iterable[MeterReading],
        instant: datetime,
        *,
        now: datetime | None = None,
    ) -> tuple[MonthlyRollup, list[ProductionDay]]:
        """Monthly rollup of the production month containing ``instant``.

        Returns the rollup and the per-day statistics it was built from.
        """
        window: MonthWindow = month_bounds(instant, self.tz_offset)
        in_month = readings_in_window(list(readings), window.start, window.end, inclusive_end=True)
        days = [
            day
            for day in self.rollup_days(in_month, now=now).values()
            if window.contains(production_day_window(date.fromisoformat(day.date_key), self.tz_offset).start)
        ]
        label = f"{window.year:04d}-{window.month:02d}"
        return self.monthly_rollup(days, month=label), days

    # Analytics over the instantaneous rate series

    def efficiency(self, speed: float) -> float:
        """Speed as a percentage of the hourly plan."""
        return speed / self.settings.hourly_target_tonnes * 100

    def peak_period(self, readings: Iterable[MeterReading]) -> dict[str, Any] | None:
        """Reading with the highest instantaneous rate, or None without data."""
        readings = list(readings)
        if not readings:
            return None
        peak = max(readings, key=lambda r: r.instantaneous_rate)
        return {
            "period": to_local(peak.timestamp, self.tz_offset).strftime("%H:%M"),
            "timestamp": peak.timestamp,
            "speed": peak.instantaneous_rate,
            "efficiency": self.efficiency(peak.instantaneous_rate),
        }

    def analyze_trend(self, readings: Iterable[MeterReading], *, stable_percent: float = 3.0) -> dict[str, Any]:
        """Compare the mean rate of the first and last quarter of the series.

        Changes under ``stable_percent`` are reported as stable.
        """
        ordered = sorted(readings, key=lambda r: r.timestamp)
        if len(ordered) < 2:
            return {"trend": "stable", "change": 0.0, "change_percent": 0.0}

        quarter = max(1, len(ordered) // 4)
        first = [r.instantaneous_rate for r in ordered[:quarter]]
        last = [r.instantaneous_rate for r in ordered[-quarter:]]
        avg_first = sum(first) / len(first)
        avg_last = sum(last) / len(last)
        change = avg_last - avg_first

        if avg_first == 0:
            change_percent = 0.0 if change == 0 else math.copysign(100.0, change)
        else:
            change_percent = change / avg_first * 100

        if abs(change_percent) < stable_percent:
            trend = "stable"
        elif change_percent > 0:
            trend = "increasing"
        else:
            trend = "decreasing"
        return {"trend": trend, "change": change, "change_percent": change_percent}

    def performance_summary(self, readings: Iterable[MeterReading]) -> dict[str, float]:
        """Mean, min, max and population standard deviation of the rate."""
        speeds = [r.instantaneous_rate for r in readings]
        if not speeds:
            return {"avg_speed": 0.0, "min_speed": 0.0, "max_speed": 0.0, "std_deviation": 0.0}
        return {
            "avg_speed": statistics.fmean(speeds),
            "min_speed": min(speeds),
            "max_speed": max(speeds),
            "std_deviation": statistics.pstdev(speeds),
        }

    def low_performance_periods(
        self,
        readings: Iterable[MeterReading],
        *,
        threshold_ratio: float = 0.8,
        sample_minutes: float = 5.0,
    ) -> list[dict[str, Any]]:
        """Runs of consecutive readings below ``threshold_ratio`` of plan speed.

        ``duration_minutes`` counts ``sample_minutes`` per reading in the run.
        """
        threshold = self.settings.hourly_target_tonnes * threshold_ratio
        periods: list[dict[str, Any]] = []
        run: list[MeterReading] = []

        def close_run() -> None:
            if run:
                periods.append(
                    {
                        "start": run[0].timestamp,
                        "end": run[-1].timestamp,
                        "avg_speed": sum(r.instantaneous_rate for r in run) / len(run),
                        "duration_minutes": len(run) * sample_minutes,
                    }
                )
                run.clear()

        for reading in sorted(readings, key=lambda r: r.timestamp):
            if reading.instantaneous_rate < threshold:
                run.append(reading)
            else:
                close_run()
        close_run()
        return periods

    def suggest_maintenance_window(self, readings: Iterable[MeterReading]) -> dict[str, Any] | None:
        """Local hour of day with the lowest mean rate."""
        by_hour: dict[int, list[float]] = {}
        for reading in readings:
            hour = to_local(reading.timestamp, self.tz_offset).hour
            by_hour.setdefault(hour, []).append(reading.instantaneous_rate)
        if not by_hour:
            return None

        hour, speeds = min(by_hour.items(), key=lambda item: (sum(item[1]) / len(item[1]), item[0]))
        avg_speed = sum(speeds) / len(speeds)
        return {
            "suggested_time": f"{hour:02d}:00 - {(hour + 1) % 24:02d}:00",
            "hour": hour,
            "avg_speed": avg_speed,
            "reason": f"Lowest mean production speed ({avg_speed:.1f} t/h)",
        }

    def screen_shift_aggregates(self, aggregates: Iterable[ShiftAggregate]) -> list[ShiftAggregate]:
        """Flag persisted aggregates with an implausible ``difference``.

        Emits :class:`AnomalousShiftTotal` for every aggregate above the
        correction threshold and returns them. Nothing is corrected here; that
        is left to :class:`~meterledger.correction.CorrectionService`.
        """
        threshold = self.settings.correction_anomaly_threshold
        flagged = [a for a in aggregates if not a.corrected and a.difference > threshold]
        for aggregate in flagged:
            message = (
                f"Shift aggregate {aggregate.id} ({aggregate.production_date.isoformat()} "
                f"{aggregate.shift_type.value}) has difference={aggregate.difference} "
                f"above {threshold}"
            )
            self.log.warning(message)
            warnings.warn(message, AnomalousShiftTotal, stacklevel=2)
        return flagged
