"""Production windows, delta classification, rollups, forecasts and equipment metrics."""

from .aggregator import ProductionDayGroup, bucket, floor_to_bucket, group_by_production_day, hourly_breakdown
from .deltas import (
    AUDIT_POLICY,
    DASHBOARD_POLICY,
    DeltaPolicy,
    DeltaReport,
    classify_pair,
    compute_deltas,
    gap_report,
    normalize_readings,
)
from .engine import MonthlyRollup, RollupEngine, status_for_speed
from .forecast import Forecast, ForecastComparison, ForecastConfidence, ForecastEngine, GoalEstimate
from .metrics import (
    MetricDefinition,
    MetricId,
    MetricPoint,
    MetricRegistry,
    MetricSample,
    aggregate_collections,
    aggregate_metric_samples,
    clean_unit,
    out_of_norm,
)
from .time_windows import (
    MonthWindow,
    ProductionWindow,
    ShiftWindow,
    iter_production_days,
    last_completed_production_day,
    month_bounds,
    previous_production_day,
    production_day_bounds,
    production_day_key,
    production_day_window,
    shift_bounds,
    shift_window,
    shifts_of_production_day,
)

__all__ = [
    # Time windows
    "MonthWindow",
    "ProductionWindow",
    "ShiftWindow",
    "iter_production_days",
    "last_completed_production_day",
    "month_bounds",
    "previous_production_day",
    "production_day_bounds",
    "production_day_key",
    "production_day_window",
    "shift_bounds",
    "shift_window",
    "shifts_of_production_day",
    # Deltas
    "AUDIT_POLICY",
    "DASHBOARD_POLICY",
    "DeltaPolicy",
    "DeltaReport",
    "classify_pair",
    "compute_deltas",
    "gap_report",
    "normalize_readings",
    # Aggregation
    "ProductionDayGroup",
    "bucket",
    "floor_to_bucket",
    "group_by_production_day",
    "hourly_breakdown",
    # Rollups
    "MonthlyRollup",
    "RollupEngine",
    "status_for_speed",
    # Forecasts
    "Forecast",
    "ForecastComparison",
    "ForecastConfidence",
    "ForecastEngine",
    "GoalEstimate",
    # Equipment metrics
    "MetricDefinition",
    "MetricId",
    "MetricPoint",
    "MetricRegistry",
    "MetricSample",
    "aggregate_collections",
    "aggregate_metric_samples",
    "clean_unit",
    "out_of_norm",
]
