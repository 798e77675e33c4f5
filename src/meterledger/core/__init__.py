"""Domain model, error taxonomy and UTC helpers."""

from .errors import (
    AnomalousShiftTotal,
    BlockingError,
    CannotAutoCorrect,
    ConflictingDuplicate,
    MeterLedgerError,
    MetricUnitMismatch,
    MissingWindowData,
    ShiftAggregateNotFound,
    StaleAggregate,
    UnknownMetric,
)
from .models import (
    AnomalyKind,
    AnomalyRecord,
    DeltaClassification,
    ElapsedBasis,
    MeterReading,
    ProductionDay,
    ProductionDelta,
    ProductionStatus,
    ShiftAggregate,
    ShiftType,
    TimeBucket,
)
from .time import ensure_utc, format_utc_iso8601, get_current_utc, hours_between, parse_utc_iso8601

__all__ = [
    # Errors
    "AnomalousShiftTotal",
    "BlockingError",
    "CannotAutoCorrect",
    "ConflictingDuplicate",
    "MeterLedgerError",
    "MetricUnitMismatch",
    "MissingWindowData",
    "ShiftAggregateNotFound",
    "StaleAggregate",
    "UnknownMetric",
    # Models
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
    # Time
    "ensure_utc",
    "format_utc_iso8601",
    "get_current_utc",
    "hours_between",
    "parse_utc_iso8601",
]
