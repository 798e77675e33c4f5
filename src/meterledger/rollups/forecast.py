"""End-of-window production forecasts.

The projection is a straight-line extrapolation of the average speed so far:
``projected = total + speed * remaining``. Elapsed time is measured from the
window start by default. The first-to-last reading span is available as a
separate basis for comparison with legacy figures and is never mixed with the
default one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config.settings import EngineSettings
from ..core.models import ElapsedBasis, MeterReading, ShiftType
from ..core.time import ensure_utc, format_utc_iso8601, get_current_utc, hours_between
from ..observability import get_logger
from .deltas import DeltaPolicy, DeltaReport, compute_deltas
from .engine import elapsed_hours, readings_in_window
from .time_windows import production_day_bounds, production_day_window, shift_bounds

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = [
    "ForecastConfidence",
    "Forecast",
    "ForecastComparison",
    "ForecastEngine",
    "GoalEstimate",
    "forecast_confidence",
]

MIN_ELAPSED_HOURS = 1.0


class ForecastConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def forecast_confidence(sample_count: int, elapsed: float) -> ForecastConfidence:
    """HIGH above 100 samples and 12h, MEDIUM above 50 samples and 6h, else LOW."""
    if sample_count > 100 and elapsed > 12:
        return ForecastConfidence.HIGH
    if sample_count > 50 and elapsed > 6:
        return ForecastConfidence.MEDIUM
    return ForecastConfidence.LOW


@dataclass(frozen=True)
class Forecast:
    """Projected end-of-window total.

    Attributes
    ----------
    projected_total : float
        Expected production at window end
    confidence : ForecastConfidence
        Derived from sample count and elapsed hours
    achieves_target : bool
        ``projected_total >= target``
    elapsed_hours : float
        Elapsed time under ``basis``
    average_speed : float
        ``total_so_far / elapsed_hours`` (t/h)
    basis : ElapsedBasis
        How elapsed time was measured
    total_so_far : float
        Qualifying production attributed to the window so far
    remaining_hours : float
        ``window_length - elapsed_hours``
    sample_count : int
        Readings inside the window
    target : float
        Target the projection was compared against
    """

    projected_total: float
    confidence: ForecastConfidence
    achieves_target: bool
    elapsed_hours: float
    average_speed: float
    basis: ElapsedBasis
    total_so_far: float = 0.0
    remaining_hours: float = 0.0
    sample_count: int = 0
    target: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "projected_total": self.projected_total,
            "confidence": self.confidence.value,
            "achieves_target": self.achieves_target,
            "elapsed_hours": self.elapsed_hours,
            "average_speed": self.average_speed,
            "basis": self.basis.value,
            "total_so_far": self.total_so_far,
            "remaining_hours": self.remaining_hours,
            "sample_count": self.sample_count,
            "target": self.target,
        }


@dataclass(frozen=True)
class ForecastComparison:
    """Window-anchored and span-anchored forecasts side by side."""

    window: Forecast
    span: Forecast

    @property
    def elapsed_difference_hours(self) -> float:
        return self.window.elapsed_hours - self.span.elapsed_hours

    @property
    def speed_inflation(self) -> float:
        """Span speed relative to window speed (1.0 means no divergence)."""
        if self.window.average_speed == 0:
            return 1.0 if self.span.average_speed == 0 else float("inf")
        return self.span.average_speed / self.window.average_speed

    @property
    def forecast_error(self) -> float:
        """How far the span projection overshoots the window projection (tonnes)."""
        return self.span.projected_total - self.window.projected_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window.to_dict(),
            "span": self.span.to_dict(),
            "elapsed_difference_hours": self.elapsed_difference_hours,
            "speed_inflation": self.speed_inflation,
            "forecast_error": self.forecast_error,
        }


@dataclass(frozen=True)
class GoalEstimate:
    hours_needed: float
    estimated_time: datetime | None
    possible: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "hours_needed": self.hours_needed,
            "estimated_time": format_utc_iso8601(self.estimated_time) if self.estimated_time else None,
            "possible": self.possible,
        }


class ForecastEngine:
    """Projects production totals to the end of a day or shift window."""

    def __init__(self, settings: EngineSettings | None = None, *, policy: DeltaPolicy | None = None) -> None:
        self.settings = settings or EngineSettings()
        self.policy = policy or DeltaPolicy.from_settings(self.settings)
        self.log = get_logger("forecast")

    def _default_target(self, window_start: datetime, window_end: datetime) -> float:
        if hours_between(window_start, window_end) > 12:
            return self.settings.daily_target_tonnes
        return self.settings.shift_target_tonnes

    def forecast(
        self,
        readings: Iterable[MeterReading],
        window_start: datetime,
        window_end: datetime,
        *,
        now: datetime | None = None,
        target: float | None = None,
        basis: ElapsedBasis = ElapsedBasis.WINDOW,
        report: DeltaReport | None = None,
        contained: bool = True,
    ) -> Forecast:
        """Project the window's total at ``window_end``.

        Parameters
        ----------
        readings
            Readings of the window so far
        window_start, window_end
            Window bounds (UTC)
        now
            Evaluation instant (default: current time)
        target
            Goal for ``achieves_target``; the daily target for windows longer
            than 12h, otherwise the shift target
        basis
            ``WINDOW`` (default) or ``SPAN``
        report
            Precomputed delta report (optional)
        contained
            Count only deltas lying entirely inside the window (default);
            ``False`` attributes each delta by its midpoint

        Returns
        -------
        Forecast
            Under one hour of elapsed time the projection is the total so far
            with LOW confidence
        """
        if report is None:
            report = compute_deltas(readings, self.policy)
        window_start = ensure_utc(window_start)
        window_end = ensure_utc(window_end)
        now = ensure_utc(now) if now is not None else get_current_utc()
        if target is None:
            target = self._default_target(window_start, window_end)

        total = report.total_between(window_start, window_end, contained=contained)
        spanning = readings_in_window(report.readings, window_start, window_end, inclusive_end=True)
        elapsed = elapsed_hours(basis, window_start, window_end, spanning, now)
        remaining = max(0.0, hours_between(window_start, window_end) - elapsed)
        speed = total / elapsed if elapsed > 0 else 0.0

        if elapsed < MIN_ELAPSED_HOURS:
            projected = total
            confidence = ForecastConfidence.LOW
        else:
            projected = total + speed * remaining
            confidence = forecast_confidence(len(spanning), elapsed)

        result = Forecast(
            projected_total=projected,
            confidence=confidence,
            achieves_target=projected >= target,
            elapsed_hours=elapsed,
            average_speed=speed,
            basis=basis,
            total_so_far=total,
            remaining_hours=remaining,
            sample_count=len(spanning),
            target=target,
        )
        self.log.debug(
            "Forecast {} basis: total={:.1f} elapsed={:.2f}h projected={:.1f} ({})",
            basis.value,
            total,
            elapsed,
            projected,
            confidence.value,
        )
        return result

    def forecast_day(
        self,
        readings: Iterable[MeterReading],
        date_key: date,
        *,
        now: datetime | None = None,
        basis: ElapsedBasis = ElapsedBasis.WINDOW,
    ) -> Forecast:
        window = production_day_window(date_key, self.settings.timezone_offset_hours)
        return self.forecast(
            readings,
            window.start,
            window.end,
            now=now,
            target=self.settings.daily_target_tonnes,
            basis=basis,
        )

    def forecast_shift(
        self,
        readings: Iterable[MeterReading],
        production_date: date,
        shift_type: ShiftType,
        *,
        now: datetime | None = None,
        basis: ElapsedBasis = ElapsedBasis.WINDOW,
    ) -> Forecast:
        shift = shift_bounds(production_date, shift_type, self.settings.timezone_offset_hours)
        return self.forecast(
            readings,
            shift.start,
            shift.end,
            now=now,
            target=self.settings.shift_target_tonnes,
            basis=basis,
        )

    def compare_bases(
        self,
        readings: Iterable[MeterReading],
        window_start: datetime,
        window_end: datetime,
        *,
        now: datetime | None = None,
        target: float | None = None,
    ) -> ForecastComparison:
        """Forecast under both bases from a single delta report."""
        report = compute_deltas(readings, self.policy)
        now = ensure_utc(now) if now is not None else get_current_utc()
        comparison = ForecastComparison(
            window=self.forecast(
                (), window_start, window_end, now=now, target=target, basis=ElapsedBasis.WINDOW, report=report
            ),
            span=self.forecast(
                (), window_start, window_end, now=now, target=target, basis=ElapsedBasis.SPAN, report=report
            ),
        )
        if comparison.elapsed_difference_hours > 0:
            self.log.info(
                "Span basis is {:.2f}h shorter than the window; speed inflated x{:.2f}",
                comparison.elapsed_difference_hours,
                comparison.speed_inflation,
            )
        return comparison

    def estimate_goal_time(
        self,
        current_production: float,
        current_speed: float,
        goal: float,
        *,
        now: datetime | None = None,
        window_end: datetime | None = None,
    ) -> GoalEstimate:
        """When ``goal`` is reached at ``current_speed``.

        ``possible`` is whether that happens by ``window_end`` (default: end of
        the production day containing ``now``).
        """
        now = ensure_utc(now) if now is not None else get_current_utc()
        remaining = goal - current_production
        if remaining <= 0:
            return GoalEstimate(hours_needed=0.0, estimated_time=now, possible=True)
        if current_speed <= 0:
            return GoalEstimate(hours_needed=float("inf"), estimated_time=None, possible=False)

        if window_end is None:
            window_end = production_day_bounds(now, self.settings.timezone_offset_hours).end

        hours_needed = remaining / current_speed
        estimated = now + timedelta(hours=hours_needed)
        return GoalEstimate(
            hours_needed=hours_needed,
            estimated_time=estimated,
            possible=estimated <= ensure_utc(window_end),
        )
