"""End-to-end scenarios: readings in a SQLite store through rollups, forecasts and corrections."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from meterledger import (
    CorrectionRequest,
    CorrectionService,
    EngineSettings,
    ForecastEngine,
    RollupEngine,
    SQLiteMeterStore,
)
from meterledger.core.errors import AnomalousShiftTotal
from meterledger.core.models import DeltaClassification, ElapsedBasis, ShiftAggregate, ShiftType
from meterledger.rollups import bucket, compute_deltas, production_day_window
from meterledger.rollups.deltas import AUDIT_POLICY
from tests.builders import consecutive_days, linear_readings, local_dt, series

DAY = date(2025, 10, 7)


@pytest.fixture
def store(tmp_path):
    with SQLiteMeterStore(tmp_path / "plant.db") as sqlite_store:
        yield sqlite_store


@pytest.mark.integration
def test_production_day_from_store(store):
    """Test DoD: night 430 t + day 590 t = 1020 t, 85% of plan."""
    store.add_readings(consecutive_days(2025, 10, 7, 1))
    engine = RollupEngine(EngineSettings())
    window = production_day_window(DAY, 5)

    readings = store.fetch_readings(window.start, window.end, inclusive_end=True)
    stats = engine.daily_stats(readings, DAY, now=local_dt(2025, 10, 9, 9))

    assert stats.night_shift_total == pytest.approx(430.0)
    assert stats.day_shift_total == pytest.approx(590.0)
    assert stats.total_production == pytest.approx(1020.0)
    assert stats.progress_percent == pytest.approx(85.0)
    # Monotonic, regular, no resets: total equals last minus first
    assert stats.total_production == pytest.approx(readings[-1].cumulative_value - readings[0].cumulative_value)


@pytest.mark.integration
def test_chart_buckets_are_stable(store):
    store.add_readings(consecutive_days(2025, 10, 7, 1))
    window = production_day_window(DAY, 5)
    readings = store.fetch_readings(window.start, window.end)

    first = bucket(readings, 30, 5)
    second = bucket(store.fetch_readings(window.start, window.end), 30, 5)

    assert first == second
    assert len(first) == 48
    # The last interval closes at 20:00, outside the half-open fetch
    assert sum(b.total_production for b in first) == pytest.approx(1020.0 - 590.0 / 144, rel=1e-3)


@pytest.mark.integration
def test_counter_reset_and_anomalies(store):
    store.add_readings(series(local_dt(2025, 10, 7, 21), [960, 970, 980, 0, 15, 30]))

    report = compute_deltas(store.fetch_readings(local_dt(2025, 10, 7, 20), local_dt(2025, 10, 7, 23)))

    reset = report.deltas[2]
    assert reset.classification is DeltaClassification.COUNTER_RESET
    assert report.deltas[3].corrected_delta == 15
    assert report.production_total() == 50


@pytest.mark.integration
def test_gap_and_spike_with_audit_policy(store):
    start = local_dt(2025, 10, 7, 21)
    store.add_readings(series(start, [100, 105]))
    store.add_readings(series(start + timedelta(minutes=95), [110, 260, 262]))

    report = compute_deltas(store.fetch_readings(start, start + timedelta(hours=3)), AUDIT_POLICY)

    assert [d.classification for d in report.deltas] == [
        DeltaClassification.NORMAL,
        DeltaClassification.GAP,
        DeltaClassification.SPIKE,
        DeltaClassification.NORMAL,
    ]
    assert report.anomaly_free_total == 7
    assert report.raw_total == 157


@pytest.mark.integration
def test_forecast_bases_never_conflated(store):
    """Test a 2-hour outage at the start of the day separates the two bases."""
    store.add_readings(linear_readings(local_dt(2025, 10, 7, 22), local_dt(2025, 10, 8, 8), 0.0, 500.0))
    window = production_day_window(DAY, 5)
    now = local_dt(2025, 10, 8, 8)
    readings = store.fetch_readings(window.start, now, inclusive_end=True)

    forecaster = ForecastEngine(EngineSettings())
    comparison = forecaster.compare_bases(readings, window.start, window.end, now=now)
    live = RollupEngine(EngineSettings()).daily_stats(readings, DAY, now=now)

    assert comparison.window.basis is ElapsedBasis.WINDOW
    assert comparison.window.elapsed_hours - comparison.span.elapsed_hours == pytest.approx(2.0)
    assert comparison.span.average_speed > comparison.window.average_speed
    assert comparison.span.projected_total > comparison.window.projected_total
    # The live rollup defaults to the window basis
    assert live.average_speed == pytest.approx(comparison.window.average_speed)
    assert live.span_average_speed == pytest.approx(comparison.span.average_speed)


@pytest.mark.integration
def test_defective_aggregate_screened_then_corrected(store):
    settings = EngineSettings()
    store.add_readings(consecutive_days(2025, 10, 7, 1))
    store.add_shift_aggregate(ShiftAggregate("n-1007", DAY, ShiftType.NIGHT, difference=15660.0, value=430.0))
    store.add_shift_aggregate(
        ShiftAggregate("d-1008", date(2025, 10, 8), ShiftType.DAY, difference=590.0, value=1020.0)
    )

    with pytest.warns(AnomalousShiftTotal):
        flagged = RollupEngine(settings).screen_shift_aggregates(store.list_shift_aggregates(DAY, date(2025, 10, 8)))
    assert [a.id for a in flagged] == ["n-1007"]

    service = CorrectionService(store, settings)
    preview = service.correct(CorrectionRequest(DAY))
    assert not preview.applied
    assert store.get_shift_aggregate(DAY, ShiftType.NIGHT).difference == 15660.0

    result = service.correct(CorrectionRequest(DAY, dry_run=False))
    again = service.apply(result.diagnosis)

    assert result.audit.modified_count == 1
    assert (again.matched_count, again.modified_count) == (1, 0)
    stored = store.get_shift_aggregate(DAY, ShiftType.NIGHT)
    assert stored.difference == pytest.approx(430.0)
    assert stored.original_difference == 15660.0
    assert stored.correction_reason == "counter_reset"
    assert RollupEngine(settings).screen_shift_aggregates(store.list_shift_aggregates(DAY, DAY)) == []
