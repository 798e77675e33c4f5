"""Bucketing and production-day grouping of meter readings.

Buckets follow a local-time grid and only count deltas that lie entirely
inside one bucket. Production days and shifts follow the same containment
rule: a delta straddling a cutoff belongs to neither side.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..config.settings import ALLOWED_BUCKET_SIZES
from ..core.models import (
    AnomalyRecord,
    MeterReading,
    ProductionDelta,
    ShiftType,
    TimeBucket,
)
from ..core.time import ensure_utc
from .deltas import DASHBOARD_POLICY, DeltaPolicy, DeltaReport, compute_deltas
from .time_windows import (
    ProductionWindow,
    production_day_key,
    production_day_window,
    shift_window,
    to_local,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = [
    "ProductionDayGroup",
    "bucket",
    "floor_to_bucket",
    "group_by_production_day",
    "hourly_breakdown",
]


class ProductionDayGroup:
    """Readings and deltas of one production day, split by shift.

    Attributes
    ----------
    window : ProductionWindow
        UTC bounds of the production day
    readings : list[MeterReading]
        Readings taken inside ``[window.start, window.end)``
    deltas : list[ProductionDelta]
        Deltas lying entirely inside the window
    anomalies : list[AnomalyRecord]
        Anomalies detected inside the window
    night_shift_total : float
        Qualifying production in the night shift (20:00-08:00 local)
    day_shift_total : float
        Qualifying production in the day shift (08:00-20:00 local)
    total_production : float
        Qualifying production of the whole day, including deltas that
        straddle the 08:00 change-over and so belong to neither shift
    """

    def __init__(self, window: ProductionWindow) -> None:
        self.window = window
        self.readings: list[MeterReading] = []
        self.deltas: list[ProductionDelta] = []
        self.anomalies: list[AnomalyRecord] = []
        self.night_shift_total = 0.0
        self.day_shift_total = 0.0
        self.total_production = 0.0

    @property
    def date_key(self) -> date:
        return self.window.date_key

    def add_delta(self, delta: ProductionDelta, shift_type: ShiftType | None, include_spikes: bool) -> None:
        """Attach a delta and count it towards the day and, when given, its shift."""
        self.deltas.append(delta)
        if not delta.qualifies(include_spikes):
            return
        self.total_production += delta.corrected_delta
        if shift_type is None:
            return
        if shift_type is ShiftType.NIGHT:
            self.night_shift_total += delta.corrected_delta
        else:
            self.day_shift_total += delta.corrected_delta

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.window.to_dict(),
            "readings_count": len(self.readings),
            "deltas_count": len(self.deltas),
            "anomalies_count": len(self.anomalies),
            "night_shift_total": self.night_shift_total,
            "day_shift_total": self.day_shift_total,
            "total_production": self.total_production,
        }


def floor_to_bucket(instant: datetime, bucket_size_minutes: int, tz_offset_hours: int = 5) -> datetime:
    """Start (UTC) of the local-time bucket containing ``instant``."""
    local = to_local(instant, tz_offset_hours)
    floored = local.replace(
        minute=local.minute - local.minute % bucket_size_minutes,
        second=0,
        microsecond=0,
    )
    return ensure_utc(floored)


def bucket(
    readings: Iterable[MeterReading],
    bucket_size_minutes: int = 30,
    tz_offset_hours: int = 5,
    policy: DeltaPolicy = DASHBOARD_POLICY,
    *,
    report: DeltaReport | None = None,
) -> list[TimeBucket]:
    """Aggregate readings into fixed-size local-time buckets.

    Parameters
    ----------
    readings
        Readings in any order
    bucket_size_minutes
        15 or 30
    tz_offset_hours
        Plant offset from UTC
    policy
        Delta classification policy
    report
        Precomputed delta report for the same readings (optional)

    Returns
    -------
    list[TimeBucket]
        Buckets ordered by start; only buckets holding readings are returned

    Raises
    ------
    ValueError
        If ``bucket_size_minutes`` is not 15 or 30
    """
    if bucket_size_minutes not in ALLOWED_BUCKET_SIZES:
        raise ValueError(
            f"bucket_size_minutes must be one of {ALLOWED_BUCKET_SIZES}, got {bucket_size_minutes}"
        )

    if report is None:
        report = compute_deltas(readings, policy)
    size = timedelta(minutes=bucket_size_minutes)

    rates: dict[datetime, list[float]] = defaultdict(list)
    for reading in report.readings:
        start = floor_to_bucket(reading.timestamp, bucket_size_minutes, tz_offset_hours)
        rates[start].append(reading.instantaneous_rate)

    totals: dict[datetime, float] = defaultdict(float)
    for delta in report.deltas:
        if not delta.qualifies(report.policy.include_spikes):
            continue
        start = floor_to_bucket(delta.window_start, bucket_size_minutes, tz_offset_hours)
        # Deltas straddling a bucket edge belong to no bucket
        if delta.window_end <= start + size:
            totals[start] += delta.corrected_delta

    return [
        TimeBucket(
            bucket_start=start,
            bucket_end=start + size,
            total_production=totals.get(start, 0.0),
            average_rate=sum(values) / len(values),
            sample_count=len(values),
        )
        for start, values in sorted(rates.items())
    ]


def group_by_production_day(
    readings: Iterable[MeterReading],
    tz_offset_hours: int = 5,
    policy: DeltaPolicy = DASHBOARD_POLICY,
    *,
    report: DeltaReport | None = None,
    contained: bool = True,
) -> dict[date, ProductionDayGroup]:
    """Group readings and deltas by production day and shift.

    The production-day rule (20:00 cutoff) and the shift rule (08:00/20:00
    change-over) are applied independently: a production day's night shift
    physically ends on the next calendar morning.

    Parameters
    ----------
    readings
        Readings in any order
    tz_offset_hours
        Plant offset from UTC
    policy
        Delta classification policy
    report
        Precomputed delta report for the same readings (optional)
    contained
        Attach only deltas lying entirely inside a day (default). ``False``
        attaches each delta to the day and shift holding its midpoint.

    Returns
    -------
    dict[date, ProductionDayGroup]
        Groups keyed by production day, in ascending key order
    """
    if report is None:
        report = compute_deltas(readings, policy)
    groups: dict[date, ProductionDayGroup] = {}

    def group_for(instant: datetime) -> ProductionDayGroup:
        key = production_day_key(instant, tz_offset_hours)
        if key not in groups:
            groups[key] = ProductionDayGroup(production_day_window(key, tz_offset_hours))
        return groups[key]

    for reading in report.readings:
        group_for(reading.timestamp).readings.append(reading)

    include_spikes = report.policy.include_spikes
    for delta in report.deltas:
        anchor = delta.window_start if contained else delta.midpoint
        group = group_for(anchor)
        shift = shift_window(anchor, tz_offset_hours)
        if contained:
            if delta.window_end > group.window.end:
                continue
            shift_type = shift.shift_type if delta.window_end <= shift.end else None
        else:
            shift_type = shift.shift_type
        group.add_delta(delta, shift_type, include_spikes)

    for anomaly in report.anomalies:
        group_for(anomaly.timestamp).anomalies.append(anomaly)

    return dict(sorted(groups.items()))


def hourly_breakdown(
    readings: Iterable[MeterReading],
    tz_offset_hours: int = 5,
    policy: DeltaPolicy = DASHBOARD_POLICY,
    *,
    report: DeltaReport | None = None,
) -> list[dict[str, Any]]:
    """Per local hour diagnostics: sample count, production, rate range, anomalies.

    Production goes to the hour holding each delta's midpoint.
    """
    if report is None:
        report = compute_deltas(readings, policy)

    hours: dict[str, dict[str, Any]] = {}

    def entry(instant: datetime) -> dict[str, Any]:
        key = to_local(instant, tz_offset_hours).strftime("%Y-%m-%dT%H:00")
        if key not in hours:
            hours[key] = {
                "hour": key,
                "count": 0,
                "production": 0.0,
                "rates": [],
                "first_record": None,
                "last_record": None,
                "anomalies": [],
            }
        return hours[key]

    for reading in report.readings:
        bucket_entry = entry(reading.timestamp)
        local_iso = to_local(reading.timestamp, tz_offset_hours).isoformat()
        bucket_entry["count"] += 1
        bucket_entry["rates"].append(reading.instantaneous_rate)
        if bucket_entry["first_record"] is None:
            bucket_entry["first_record"] = local_iso
        bucket_entry["last_record"] = local_iso

    for delta in report.deltas:
        if delta.qualifies(report.policy.include_spikes):
            entry(delta.midpoint)["production"] += delta.corrected_delta

    for anomaly in report.anomalies:
        entry(anomaly.timestamp)["anomalies"].append(anomaly.note)

    result = []
    for key in sorted(hours):
        item = hours[key]
        rates = item.pop("rates")
        item["min_rate"] = min(rates) if rates else 0.0
        item["max_rate"] = max(rates) if rates else 0.0
        item["avg_rate"] = sum(rates) / len(rates) if rates else 0.0
        result.append(item)
    return result
