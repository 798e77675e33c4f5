"""Retroactive correction of defective shift aggregates.

A known upstream defect stores the absolute counter value in a shift
aggregate's ``difference`` after the meter restarts. The service re-derives
the shift's production from raw readings and, on explicit request, writes the
corrected value back with audit fields.

Workflow
--------
1. ``diagnose``: read the aggregate and the raw readings of its window, and
   compute the corrected difference (no side effects).
2. ``apply``: persist the diagnosis through a compare-and-set on the stored
   ``difference``; re-applying is a no-op.
3. ``correct``: both steps behind a dry-run flag.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config.settings import EngineSettings
from ..core.errors import CannotAutoCorrect, MissingWindowData, ShiftAggregateNotFound
from ..core.models import DeltaClassification, ShiftType
from ..core.time import ensure_utc, format_utc_iso8601, get_current_utc
from ..observability import get_logger, timing_context
from ..rollups.deltas import DeltaPolicy, compute_deltas
from ..rollups.time_windows import shift_bounds

if TYPE_CHECKING:
    from ..storage.store import MeterStore

__all__ = [
    "CorrectionAudit",
    "CorrectionDiagnosis",
    "CorrectionMethod",
    "CorrectionRequest",
    "CorrectionResult",
    "CorrectionService",
]

REASON_COUNTER_RESET = "counter_reset"
REASON_MANUAL_FIX = "manual_fix"


class CorrectionMethod(str, Enum):
    """How the corrected difference was derived."""

    NONE = "none"
    COUNTER_RESET = "counter_reset"
    DELTA_REPLAY = "delta_replay"
    RAW_SPAN = "raw_span"
    ADJACENT_SHIFT_RESET = "adjacent_shift_reset"


@dataclass(frozen=True)
class CorrectionDiagnosis:
    """Result of re-deriving one shift aggregate.

    Attributes
    ----------
    aggregate_id : str
        Store id of the aggregate
    production_date : date
        Calendar date the shift started on
    shift_type : ShiftType
        Diagnosed shift
    old_difference : float
        Stored ``difference`` at diagnosis time (the compare-and-set guard)
    new_difference : float
        Re-derived production
    was_counter_reset : bool
        Whether the meter restarted in or before the shift
    method : CorrectionMethod
        Derivation used
    needs_correction : bool
        Stored ``difference`` exceeded the anomaly threshold
    window_start, window_end : datetime
        Shift window that was read
    readings_count : int
        Raw readings found in the window
    first_value, last_value : float | None
        Counter at the first and last reading
    adjacent_value : float | None
        Preceding shift's stored ``value`` when readings were missing
    """

    aggregate_id: str
    production_date: date
    shift_type: ShiftType
    old_difference: float
    new_difference: float
    was_counter_reset: bool
    method: CorrectionMethod
    needs_correction: bool
    window_start: datetime
    window_end: datetime
    readings_count: int = 0
    first_value: float | None = None
    last_value: float | None = None
    adjacent_value: float | None = None

    @property
    def reason(self) -> str:
        return REASON_COUNTER_RESET if self.was_counter_reset else REASON_MANUAL_FIX

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregate_id": self.aggregate_id,
            "production_date": self.production_date.isoformat(),
            "shift_type": self.shift_type.value,
            "old_difference": self.old_difference,
            "new_difference": self.new_difference,
            "was_counter_reset": self.was_counter_reset,
            "method": self.method.value,
            "needs_correction": self.needs_correction,
            "reason": self.reason,
            "window_start": format_utc_iso8601(self.window_start),
            "window_end": format_utc_iso8601(self.window_end),
            "readings_count": self.readings_count,
            "first_value": self.first_value,
            "last_value": self.last_value,
            "adjacent_value": self.adjacent_value,
        }


@dataclass(frozen=True)
class CorrectionRequest:
    production_date: date
    dry_run: bool = True
    shift_type: ShiftType = ShiftType.NIGHT


@dataclass(frozen=True)
class CorrectionAudit:
    """Outcome of the conditional update."""

    matched_count: int
    modified_count: int
    aggregate_id: str | None = None
    corrected_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched_count": self.matched_count,
            "modified_count": self.modified_count,
            "aggregate_id": self.aggregate_id,
            "corrected_at": format_utc_iso8601(self.corrected_at) if self.corrected_at else None,
        }


@dataclass(frozen=True)
class CorrectionResult:
    diagnosis: CorrectionDiagnosis
    applied: bool
    audit: CorrectionAudit | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "diagnosis": self.diagnosis.to_dict(),
            "audit": self.audit.to_dict() if self.audit else None,
        }


class CorrectionService:
    """Diagnoses and repairs persisted shift aggregates.

    Example
    -------
    >>> service = CorrectionService(store, EngineSettings())
    >>> result = service.correct(CorrectionRequest(date(2025, 10, 7), dry_run=True))
    >>> result.diagnosis.new_difference
    430.0
    """

    def __init__(self, store: MeterStore, settings: EngineSettings | None = None) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.policy = DeltaPolicy.from_settings(self.settings)
        self.log = get_logger("correction")

    def diagnose(self, production_date: date, shift_type: ShiftType = ShiftType.NIGHT) -> CorrectionDiagnosis:
        """Re-derive the production of one stored shift aggregate.

        Parameters
        ----------
        production_date
            Calendar date the shift started on
        shift_type
            Shift to diagnose (night by default)

        Returns
        -------
        CorrectionDiagnosis
            ``needs_correction`` is False when the stored difference is
            within the anomaly threshold; nothing else is computed then

        Raises
        ------
        ShiftAggregateNotFound
            If the shift has no stored aggregate
        MissingWindowData
            If the shift has no readings and no preceding aggregate
        CannotAutoCorrect
            If the shift has no readings and the preceding shift did not end
            near zero
        """
        aggregate = self.store.get_shift_aggregate(production_date, shift_type)
        if aggregate is None:
            raise ShiftAggregateNotFound(
                f"No {shift_type.value} shift aggregate for {production_date.isoformat()}"
            )

        shift = shift_bounds(production_date, shift_type, self.settings.timezone_offset_hours)
        common = {
            "aggregate_id": aggregate.id,
            "production_date": production_date,
            "shift_type": shift_type,
            "old_difference": aggregate.difference,
            "window_start": shift.start,
            "window_end": shift.end,
        }

        if aggregate.difference <= self.settings.correction_anomaly_threshold:
            self.log.info(
                "Shift {} {} needs no correction: difference={:.2f}",
                production_date.isoformat(),
                shift_type.value,
                aggregate.difference,
            )
            return CorrectionDiagnosis(
                **common,
                new_difference=aggregate.difference,
                was_counter_reset=False,
                method=CorrectionMethod.NONE,
                needs_correction=False,
            )

        epsilon = self.settings.reset_epsilon_tonnes
        readings = self.store.fetch_readings(shift.start, shift.end, inclusive_end=True)

        if readings:
            report = compute_deltas(readings, self.policy)
            first = report.readings[0]
            last = report.readings[-1]
            resets = [d for d in report.deltas if d.classification is DeltaClassification.COUNTER_RESET]

            if first.cumulative_value < epsilon:
                method = CorrectionMethod.COUNTER_RESET
                new_difference = last.cumulative_value
            elif resets:
                # Restart inside the shift: sum the reset-corrected deltas
                method = CorrectionMethod.DELTA_REPLAY
                new_difference = report.raw_total
            else:
                method = CorrectionMethod.RAW_SPAN
                new_difference = last.cumulative_value - first.cumulative_value

            diagnosis = CorrectionDiagnosis(
                **common,
                new_difference=new_difference,
                was_counter_reset=method is not CorrectionMethod.RAW_SPAN,
                method=method,
                needs_correction=True,
                readings_count=len(report.readings),
                first_value=first.cumulative_value,
                last_value=last.cumulative_value,
            )
        else:
            diagnosis = self._diagnose_from_adjacent(aggregate.value, common)

        self.log.info(
            "Diagnosed {} shift {}: {} -> {} via {}",
            shift_type.value,
            production_date.isoformat(),
            diagnosis.old_difference,
            diagnosis.new_difference,
            diagnosis.method.value,
        )
        return diagnosis

    def _diagnose_from_adjacent(self, stored_value: float, common: dict[str, Any]) -> CorrectionDiagnosis:
        production_date: date = common["production_date"]
        shift_type: ShiftType = common["shift_type"]
        adjacent = self.store.get_preceding_shift_aggregate(production_date, shift_type)

        if adjacent is None:
            raise MissingWindowData(
                common["window_start"],
                common["window_end"],
                f"No readings for the {shift_type.value} shift of {production_date.isoformat()} "
                "and no preceding shift aggregate to fall back on",
            )

        if adjacent.value >= self.settings.reset_epsilon_tonnes:
            raise CannotAutoCorrect(
                f"No readings for the {shift_type.value} shift of {production_date.isoformat()}; "
                f"preceding shift ended at value={adjacent.value}, not a counter reset. "
                "Review the aggregate manually.",
                hint=adjacent.value,
            )

        self.log.warning(
            "No readings for {} shift {}; preceding shift ended near zero, using stored value {}",
            shift_type.value,
            production_date.isoformat(),
            stored_value,
        )
        return CorrectionDiagnosis(
            **common,
            new_difference=stored_value,
            was_counter_reset=True,
            method=CorrectionMethod.ADJACENT_SHIFT_RESET,
            needs_correction=True,
            adjacent_value=adjacent.value,
        )

    def apply(self, diagnosis: CorrectionDiagnosis, *, corrected_at: datetime | None = None) -> CorrectionAudit:
        """Persist a diagnosis.

        The stored ``difference`` must still equal ``diagnosis.old_difference``;
        applying the same diagnosis twice matches without modifying.

        Raises
        ------
        StaleAggregate
            If the aggregate changed after the diagnosis
        ShiftAggregateNotFound
            If the aggregate disappeared
        """
        if not diagnosis.needs_correction:
            return CorrectionAudit(matched_count=0, modified_count=0, aggregate_id=diagnosis.aggregate_id)

        stamp = ensure_utc(corrected_at) if corrected_at else get_current_utc()
        with timing_context(
            "apply_correction",
            component="correction",
            aggregate_id=diagnosis.aggregate_id,
        ) as ctx:
            matched, modified = self.store.apply_correction(
                diagnosis.aggregate_id,
                expected_difference=diagnosis.old_difference,
                new_difference=diagnosis.new_difference,
                reason=diagnosis.reason,
                corrected_at=stamp,
            )
            ctx["matched_count"] = matched
            ctx["modified_count"] = modified

        if not modified:
            self.log.info("Correction of {} already applied", diagnosis.aggregate_id)
        return CorrectionAudit(
            matched_count=matched,
            modified_count=modified,
            aggregate_id=diagnosis.aggregate_id,
            corrected_at=stamp if modified else None,
        )

    def correct(self, request: CorrectionRequest) -> CorrectionResult:
        """Diagnose and, unless ``request.dry_run``, apply."""
        diagnosis = self.diagnose(request.production_date, request.shift_type)
        if request.dry_run or not diagnosis.needs_correction:
            return CorrectionResult(diagnosis=diagnosis, applied=False)

        audit = self.apply(diagnosis)
        return CorrectionResult(diagnosis=diagnosis, applied=True, audit=audit)
