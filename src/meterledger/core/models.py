"""Domain model of the production accounting engine.

Readings are produced externally and never mutated. Deltas, buckets and
production days are derived on every query. :class:`ShiftAggregate` is the
only persisted record the engine may change, and only through the correction
service.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from .time import ensure_utc, format_utc_iso8601

__all__ = [
    "AnomalyKind",
    "AnomalyRecord",
    "DeltaClassification",
    "ElapsedBasis",
    "MeterReading",
    "ProductionDay",
    "ProductionDelta",
    "ProductionStatus",
    "ShiftAggregate",
    "ShiftType",
    "TimeBucket",
]


class DeltaClassification(str, Enum):
    """Outcome of classifying one pair of consecutive readings."""

    NORMAL = "normal"
    COUNTER_RESET = "counter_reset"
    SPIKE = "spike"
    GAP = "gap"


class AnomalyKind(str, Enum):
    GAP = "gap"
    COUNTER_RESET = "counter_reset"
    SPIKE = "spike"
    RATE_OUT_OF_RANGE = "rate_out_of_range"


class ShiftType(str, Enum):
    """Day shift runs 08:00-20:00 local, night shift 20:00-08:00 local."""

    DAY = "day"
    NIGHT = "night"


class ProductionStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    DANGER = "danger"


class ElapsedBasis(str, Enum):
    """How elapsed time is measured for speed and forecasts.

    ``WINDOW`` measures wall-clock time since the window opened and is the
    default. ``SPAN`` measures first-to-last reading and is kept only for
    comparison with the legacy dashboard figures: it inflates speed whenever
    readings are missing early in the window or a gap shortens the span.
    """

    WINDOW = "window"
    SPAN = "span"


@dataclass(frozen=True)
class MeterReading:
    """One sample of the production meter.

    Attributes
    ----------
    timestamp : datetime
        Sample instant (UTC; naive values are taken as UTC)
    cumulative_value : float
        Monotonic counter in tonnes
    instantaneous_rate : float
        Reported production speed in tonnes/hour
    """

    timestamp: datetime
    cumulative_value: float
    instantaneous_rate: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_utc_iso8601(self.timestamp),
            "cumulative_value": self.cumulative_value,
            "instantaneous_rate": self.instantaneous_rate,
        }


@dataclass(frozen=True)
class ProductionDelta:
    """Classified production between two consecutive readings.

    Attributes
    ----------
    window_start : datetime
        Timestamp of the earlier reading
    window_end : datetime
        Timestamp of the later reading
    raw_delta : float
        Naive difference of the two counter values
    corrected_delta : float
        Production after reset correction
    classification : DeltaClassification
        Rule that matched first
    excluded : bool
        True when the delta never counts towards totals (large gaps)
    """

    window_start: datetime
    window_end: datetime
    raw_delta: float
    corrected_delta: float
    classification: DeltaClassification
    excluded: bool = False

    @property
    def duration_minutes(self) -> float:
        return (self.window_end - self.window_start).total_seconds() / 60.0

    @property
    def midpoint(self) -> datetime:
        return self.window_start + (self.window_end - self.window_start) / 2

    def qualifies(self, include_spikes: bool = False) -> bool:
        """Whether this delta may be summed into a production total."""
        if self.excluded or self.corrected_delta < 0:
            return False
        if self.classification is DeltaClassification.NORMAL:
            return True
        return include_spikes and self.classification is DeltaClassification.SPIKE

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_start": format_utc_iso8601(self.window_start),
            "window_end": format_utc_iso8601(self.window_end),
            "raw_delta": self.raw_delta,
            "corrected_delta": self.corrected_delta,
            "classification": self.classification.value,
            "excluded": self.excluded,
        }


@dataclass(frozen=True)
class AnomalyRecord:
    timestamp: datetime
    kind: AnomalyKind
    magnitude: float
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_utc_iso8601(self.timestamp),
            "kind": self.kind.value,
            "magnitude": self.magnitude,
            "note": self.note,
        }


@dataclass(frozen=True)
class TimeBucket:
    bucket_start: datetime
    bucket_end: datetime
    total_production: float
    average_rate: float
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket_start": format_utc_iso8601(self.bucket_start),
            "bucket_end": format_utc_iso8601(self.bucket_end),
            "total_production": self.total_production,
            "average_rate": self.average_rate,
            "sample_count": self.sample_count,
        }


@dataclass(frozen=True)
class ProductionDay:
    """Rollup of one production day (or shift, see ``RollupEngine.shift_rollup``).

    ``average_speed`` follows ``elapsed_basis``; ``span_average_speed`` is the
    legacy first-to-last-reading figure, exposed only for comparison.
    """

    date_key: str
    day_shift_total: float
    night_shift_total: float
    total_production: float
    average_speed: float
    current_speed: float
    progress_percent: float
    status: ProductionStatus
    sample_count: int = 0
    elapsed_hours: float = 0.0
    elapsed_basis: ElapsedBasis = ElapsedBasis.WINDOW
    span_average_speed: float = 0.0
    anomaly_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_key": self.date_key,
            "day_shift_total": self.day_shift_total,
            "night_shift_total": self.night_shift_total,
            "total_production": self.total_production,
            "average_speed": self.average_speed,
            "current_speed": self.current_speed,
            "progress_percent": self.progress_percent,
            "status": self.status.value,
            "sample_count": self.sample_count,
            "elapsed_hours": self.elapsed_hours,
            "elapsed_basis": self.elapsed_basis.value,
            "span_average_speed": self.span_average_speed,
            "anomaly_count": self.anomaly_count,
        }


@dataclass
class ShiftAggregate:
    """Externally persisted per-shift record.

    May carry a known defect where ``difference`` holds the absolute counter
    value instead of a true delta. Treated as untrusted input.

    Attributes
    ----------
    id : str
        Store identifier
    production_date : date
        Calendar date the shift started on
    shift_type : ShiftType
        Day or night shift
    difference : float
        Stored production for the shift
    value : float
        Stored counter value at the end of the shift
    recorded_at : datetime | None
        When the upstream system wrote the record
    corrected : bool
        Set once a correction has been applied
    corrected_at : datetime | None
        Audit timestamp of the correction
    correction_reason : str | None
        "counter_reset" or "manual_fix"
    original_difference : float | None
        Value of ``difference`` before the correction
    """

    id: str
    production_date: date
    shift_type: ShiftType
    difference: float
    value: float
    recorded_at: datetime | None = None
    corrected: bool = False
    corrected_at: datetime | None = None
    correction_reason: str | None = None
    original_difference: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "production_date": self.production_date.isoformat(),
            "shift_type": self.shift_type.value,
            "difference": self.difference,
            "value": self.value,
            "recorded_at": format_utc_iso8601(self.recorded_at) if self.recorded_at else None,
            "corrected": self.corrected,
            "corrected_at": format_utc_iso8601(self.corrected_at) if self.corrected_at else None,
            "correction_reason": self.correction_reason,
            "original_difference": self.original_difference,
        }
