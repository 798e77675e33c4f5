"""Error taxonomy of the production accounting engine.

Data-quality findings (gaps, spikes, counter resets) are never exceptions:
they come back as :class:`~meterledger.core.models.AnomalyRecord` entries next
to a best-effort total. Exceptions are reserved for conditions the caller has
to act on.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

__all__ = [
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
]


class MeterLedgerError(Exception):
    """Base class for all engine errors."""

    pass


class ConflictingDuplicate(MeterLedgerError):
    """Two readings share a timestamp but carry different values."""

    def __init__(self, timestamp: datetime, first: Any, second: Any) -> None:
        self.timestamp = timestamp
        self.first = first
        self.second = second
        super().__init__(
            f"Conflicting readings at {timestamp.isoformat()}: {first!r} != {second!r}"
        )


class BlockingError(MeterLedgerError):
    """Fatal for the correction path; the caller must intervene."""

    pass


class MissingWindowData(BlockingError):
    """No readings exist in the requested window.

    Rollups never raise this (they report zero totals); only the correction
    path treats it as blocking.
    """

    def __init__(self, start: datetime, end: datetime, message: str | None = None) -> None:
        self.start = start
        self.end = end
        super().__init__(
            message or f"No meter readings between {start.isoformat()} and {end.isoformat()}"
        )


class CannotAutoCorrect(BlockingError):
    """A defective aggregate cannot be re-derived automatically.

    Attributes
    ----------
    hint : float | None
        Stored ``value`` of the adjacent (preceding) shift, for manual review
    """

    def __init__(self, message: str, *, hint: float | None = None) -> None:
        self.hint = hint
        super().__init__(message)


class StaleAggregate(BlockingError):
    """Stored aggregate changed between diagnosis and apply."""

    def __init__(self, aggregate_id: str, expected: float, actual: float) -> None:
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Shift aggregate {aggregate_id} changed concurrently: "
            f"expected difference={expected}, found {actual}. Re-run the diagnosis."
        )


class ShiftAggregateNotFound(BlockingError):
    """No persisted aggregate for the requested production date and shift."""

    pass


class AnomalousShiftTotal(UserWarning):
    """A persisted shift aggregate carries an implausible difference.

    Emitted as a warning only; rollups recompute from raw readings and never
    correct persisted aggregates on their own.
    """

    pass


class UnknownMetric(MeterLedgerError, KeyError):
    """A metric is not registered in the metric registry."""

    def __init__(self, metric: str) -> None:
        self.metric = metric
        super().__init__(f"Unknown metric: {metric}")

    def __str__(self) -> str:
        return str(self.args[0])


class MetricUnitMismatch(MeterLedgerError, ValueError):
    """A metric value arrived with a unit other than its registered one."""

    def __init__(self, metric: str, expected: str, actual: str) -> None:
        self.metric = metric
        self.expected = expected
        self.actual = actual
        super().__init__(f"Metric {metric} expects unit {expected!r}, got {actual!r}")
