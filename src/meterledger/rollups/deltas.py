"""Delta classification of a monotonic counter stream.

Consecutive readings are turned into :class:`ProductionDelta` objects. The
first matching rule wins:

1. Gap: the readings are further apart than ``gap_threshold_minutes``.
2. Counter reset: the counter dropped by more than ``reset_tolerance`` or
   restarted below ``reset_epsilon`` from a materially larger value. The
   corrected delta is the new counter value (counting from zero).
3. Spike: the delta exceeds ``spike_threshold``.
4. Normal.

Only Normal deltas (and Spikes, when a policy asks for them) are ever summed
into production totals. Gap, reset and spike outcomes are reported as
anomalies next to the total and never abort a computation.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..core.errors import ConflictingDuplicate
from ..core.models import (
    AnomalyKind,
    AnomalyRecord,
    DeltaClassification,
    MeterReading,
    ProductionDelta,
)
from ..core.time import ensure_utc, format_utc_iso8601
from ..observability import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..config.settings import EngineSettings

__all__ = [
    "AUDIT_POLICY",
    "AUDIT_SPIKE_THRESHOLD",
    "DASHBOARD_POLICY",
    "DASHBOARD_SPIKE_THRESHOLD",
    "DeltaPolicy",
    "DeltaReport",
    "classify_pair",
    "compute_deltas",
    "gap_report",
    "normalize_readings",
]

log = get_logger("rollup")

# Audit reports flag anything above 20 t per interval; live dashboards only
# flag jumps above 100 t. Both are legitimate, callers pick one.
AUDIT_SPIKE_THRESHOLD = 20.0
DASHBOARD_SPIKE_THRESHOLD = 100.0


@dataclass(frozen=True)
class DeltaPolicy:
    """Thresholds for delta classification.

    Attributes
    ----------
    gap_threshold_minutes : float
        Silence longer than this is a Gap
    large_gap_threshold_minutes : float
        Gap deltas longer than this are excluded from every total
    reset_epsilon : float
        Counter values below this count as "restarted near zero"
    reset_tolerance : float
        Drops up to this size are jitter rather than resets
    spike_threshold : float
        Single-interval deltas above this are Spikes
    include_spikes : bool
        Whether Spike deltas count towards production totals
    max_rate : float
        Instantaneous rates above this (or below zero) are anomalies
    """

    gap_threshold_minutes: float = 15.0
    large_gap_threshold_minutes: float = 60.0
    reset_epsilon: float = 10.0
    reset_tolerance: float = 10.0
    spike_threshold: float = DASHBOARD_SPIKE_THRESHOLD
    include_spikes: bool = False
    max_rate: float = 200.0

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        spike_threshold: float | None = None,
        include_spikes: bool | None = None,
    ) -> DeltaPolicy:
        """Build a policy from engine settings, optionally overriding spike handling."""
        return cls(
            gap_threshold_minutes=settings.gap_threshold_minutes,
            large_gap_threshold_minutes=settings.large_gap_threshold_minutes,
            reset_epsilon=settings.reset_epsilon_tonnes,
            reset_tolerance=settings.reset_tolerance_tonnes,
            spike_threshold=(
                settings.spike_threshold_tonnes if spike_threshold is None else spike_threshold
            ),
            include_spikes=settings.include_spikes if include_spikes is None else include_spikes,
            max_rate=settings.max_rate_tonnes_per_hour,
        )


AUDIT_POLICY = DeltaPolicy(spike_threshold=AUDIT_SPIKE_THRESHOLD)
DASHBOARD_POLICY = DeltaPolicy(spike_threshold=DASHBOARD_SPIKE_THRESHOLD)


@dataclass(frozen=True)
class DeltaReport:
    """Classified deltas plus the parallel anomaly list.

    Attributes
    ----------
    readings : tuple[MeterReading, ...]
        Sorted, deduplicated input
    deltas : tuple[ProductionDelta, ...]
        One delta per consecutive pair
    anomalies : tuple[AnomalyRecord, ...]
        Gaps, resets, spikes and out-of-range rates in time order
    policy : DeltaPolicy
        Policy used for classification
    """

    readings: tuple[MeterReading, ...]
    deltas: tuple[ProductionDelta, ...]
    anomalies: tuple[AnomalyRecord, ...]
    policy: DeltaPolicy = field(default_factory=DeltaPolicy)

    def production_total(self, include_spikes: bool | None = None) -> float:
        """Sum of qualifying deltas (Normal, plus Spike when included)."""
        if include_spikes is None:
            include_spikes = self.policy.include_spikes
        return sum(d.corrected_delta for d in self.deltas if d.qualifies(include_spikes))

    @property
    def anomaly_free_total(self) -> float:
        """Sum of Normal deltas only."""
        return self.production_total(include_spikes=False)

    @property
    def raw_total(self) -> float:
        """Every non-negative corrected delta except large-gap spans."""
        return sum(
            d.corrected_delta for d in self.deltas if not d.excluded and d.corrected_delta >= 0
        )

    def deltas_between(self, start: datetime, end: datetime, *, contained: bool = True) -> list[ProductionDelta]:
        """Deltas attributed to ``[start, end)``.

        By default only deltas lying entirely inside the window count; a delta
        straddling either edge belongs to neither side. With
        ``contained=False`` a delta belongs to the window holding its midpoint.
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        if contained:
            return [d for d in self.deltas if start <= d.window_start and d.window_end <= end]
        return [d for d in self.deltas if start <= d.midpoint < end]

    def total_between(
        self,
        start: datetime,
        end: datetime,
        *,
        include_spikes: bool | None = None,
        contained: bool = True,
    ) -> float:
        if include_spikes is None:
            include_spikes = self.policy.include_spikes
        return sum(
            d.corrected_delta
            for d in self.deltas_between(start, end, contained=contained)
            if d.qualifies(include_spikes)
        )

    def anomalies_between(self, start: datetime, end: datetime) -> list[AnomalyRecord]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        return [a for a in self.anomalies if start <= a.timestamp < end]

    def classification_counts(self) -> dict[str, int]:
        counts = Counter(d.classification.value for d in self.deltas)
        return {c.value: counts.get(c.value, 0) for c in DeltaClassification}

    @property
    def gaps(self) -> list[ProductionDelta]:
        return [d for d in self.deltas if d.classification is DeltaClassification.GAP]

    def to_dict(self) -> dict[str, Any]:
        return {
            "readings_count": len(self.readings),
            "production_total": self.production_total(),
            "anomaly_free_total": self.anomaly_free_total,
            "raw_total": self.raw_total,
            "classification_counts": self.classification_counts(),
            "anomalies": [a.to_dict() for a in self.anomalies],
        }


def normalize_readings(readings: Iterable[MeterReading]) -> list[MeterReading]:
    """Sort readings by time and drop exact duplicates.

    Parameters
    ----------
    readings
        Readings in any order

    Returns
    -------
    list[MeterReading]
        Ascending by timestamp, one reading per timestamp

    Raises
    ------
    ConflictingDuplicate
        If two readings share a timestamp but differ in value or rate
    """
    ordered = sorted(readings, key=lambda r: r.timestamp)
    result: list[MeterReading] = []
    for reading in ordered:
        if result and result[-1].timestamp == reading.timestamp:
            kept = result[-1]
            if (
                kept.cumulative_value != reading.cumulative_value
                or kept.instantaneous_rate != reading.instantaneous_rate
            ):
                raise ConflictingDuplicate(reading.timestamp, kept, reading)
            continue
        result.append(reading)
    return result


def _is_reset(prev: MeterReading, nxt: MeterReading, policy: DeltaPolicy) -> bool:
    raw = nxt.cumulative_value - prev.cumulative_value
    if raw < -policy.reset_tolerance:
        return True
    restarted_near_zero = nxt.cumulative_value < policy.reset_epsilon
    return restarted_near_zero and prev.cumulative_value >= policy.reset_epsilon and raw < 0


def classify_pair(prev: MeterReading, nxt: MeterReading, policy: DeltaPolicy = DASHBOARD_POLICY) -> ProductionDelta:
    """Classify the production between two consecutive readings.

    Parameters
    ----------
    prev
        Earlier reading
    nxt
        Later reading
    policy
        Classification thresholds

    Returns
    -------
    ProductionDelta
        Classified delta
    """
    raw = nxt.cumulative_value - prev.cumulative_value
    minutes = (nxt.timestamp - prev.timestamp).total_seconds() / 60.0
    reset = _is_reset(prev, nxt, policy)

    if minutes > policy.gap_threshold_minutes:
        classification = DeltaClassification.GAP
        corrected = nxt.cumulative_value if reset else raw
    elif reset:
        classification = DeltaClassification.COUNTER_RESET
        corrected = nxt.cumulative_value
    elif raw > policy.spike_threshold:
        classification = DeltaClassification.SPIKE
        corrected = raw
    else:
        classification = DeltaClassification.NORMAL
        corrected = raw

    return ProductionDelta(
        window_start=prev.timestamp,
        window_end=nxt.timestamp,
        raw_delta=raw,
        corrected_delta=corrected,
        classification=classification,
        excluded=(
            classification is DeltaClassification.GAP
            and minutes > policy.large_gap_threshold_minutes
        ),
    )


def _delta_anomaly(delta: ProductionDelta, prev: MeterReading, nxt: MeterReading) -> AnomalyRecord | None:
    if delta.classification is DeltaClassification.GAP:
        note = f"No readings for {delta.duration_minutes:.0f} min"
        if delta.excluded:
            note += "; excluded from totals"
        return AnomalyRecord(delta.window_end, AnomalyKind.GAP, delta.duration_minutes, note)
    if delta.classification is DeltaClassification.COUNTER_RESET:
        return AnomalyRecord(
            delta.window_end,
            AnomalyKind.COUNTER_RESET,
            delta.raw_delta,
            f"Counter dropped {prev.cumulative_value} -> {nxt.cumulative_value}",
        )
    if delta.classification is DeltaClassification.SPIKE:
        return AnomalyRecord(
            delta.window_end,
            AnomalyKind.SPIKE,
            delta.raw_delta,
            f"Counter jumped {prev.cumulative_value} -> {nxt.cumulative_value} "
            f"(+{delta.raw_delta:.1f} t in one interval)",
        )
    return None


def _rate_anomaly(reading: MeterReading, policy: DeltaPolicy) -> AnomalyRecord | None:
    rate = reading.instantaneous_rate
    if rate < 0:
        return AnomalyRecord(
            reading.timestamp, AnomalyKind.RATE_OUT_OF_RANGE, rate, f"Negative rate: {rate} t/h"
        )
    if rate > policy.max_rate:
        return AnomalyRecord(
            reading.timestamp,
            AnomalyKind.RATE_OUT_OF_RANGE,
            rate,
            f"Rate above {policy.max_rate} t/h: {rate} t/h",
        )
    return None


def compute_deltas(readings: Iterable[MeterReading], policy: DeltaPolicy = DASHBOARD_POLICY) -> DeltaReport:
    """Classify a reading sequence into deltas and anomalies.

    Parameters
    ----------
    readings
        Readings in any order; sorted and deduplicated here
    policy
        Classification thresholds

    Returns
    -------
    DeltaReport
        Deltas for every consecutive pair and the anomaly list

    Raises
    ------
    ConflictingDuplicate
        If two readings share a timestamp with differing values
    """
    ordered = normalize_readings(readings)
    deltas: list[ProductionDelta] = []
    anomalies: list[AnomalyRecord] = []

    for index, reading in enumerate(ordered):
        if index > 0:
            prev = ordered[index - 1]
            delta = classify_pair(prev, reading, policy)
            deltas.append(delta)
            anomaly = _delta_anomaly(delta, prev, reading)
            if anomaly is not None:
                anomalies.append(anomaly)

        rate_anomaly = _rate_anomaly(reading, policy)
        if rate_anomaly is not None:
            anomalies.append(rate_anomaly)

    if anomalies:
        log.debug(
            "Classified {} deltas with {} anomalies", len(deltas), len(anomalies)
        )

    return DeltaReport(
        readings=tuple(ordered),
        deltas=tuple(deltas),
        anomalies=tuple(anomalies),
        policy=policy,
    )


def gap_report(report: DeltaReport) -> dict[str, Any]:
    """Summarise data gaps for diagnostics.

    Returns
    -------
    dict
        Gap count, gaps over the gap and large-gap thresholds, the longest gap
        in minutes, and per-gap details
    """
    gaps = report.gaps
    details = [
        {
            "from": format_utc_iso8601(d.window_start),
            "to": format_utc_iso8601(d.window_end),
            "gap_minutes": round(d.duration_minutes),
            "excluded": d.excluded,
        }
        for d in gaps
    ]
    return {
        "total_gaps": len(gaps),
        "over_gap_threshold": len(gaps),
        "over_large_gap_threshold": sum(1 for d in gaps if d.excluded),
        "longest_gap_minutes": max((round(d.duration_minutes) for d in gaps), default=0),
        "details": details,
    }
