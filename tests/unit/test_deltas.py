"""Tests for delta classification and anomaly detection."""

from __future__ import annotations

from datetime import timedelta

import pytest

from meterledger.core.errors import ConflictingDuplicate
from meterledger.core.models import AnomalyKind, DeltaClassification, MeterReading
from meterledger.rollups.deltas import (
    AUDIT_POLICY,
    DASHBOARD_POLICY,
    DeltaPolicy,
    classify_pair,
    compute_deltas,
    gap_report,
    normalize_readings,
)
from tests.builders import local_dt, series

T0 = local_dt(2025, 10, 8, 10, 0)


def reading(minutes: float, value: float, rate: float = 0.0) -> MeterReading:
    return MeterReading(T0 + timedelta(minutes=minutes), value, rate)


class TestNormalize:
    """Test sorting and deduplication."""

    def test_sorts_unordered_input(self):
        readings = [reading(10, 3), reading(0, 1), reading(5, 2)]

        ordered = normalize_readings(readings)

        assert [r.cumulative_value for r in ordered] == [1, 2, 3]

    def test_drops_exact_duplicates(self):
        readings = [reading(0, 1, 5.0), reading(0, 1, 5.0), reading(5, 2)]

        assert len(normalize_readings(readings)) == 2

    def test_conflicting_duplicate_raises(self):
        readings = [reading(0, 1), reading(0, 2)]

        with pytest.raises(ConflictingDuplicate) as exc_info:
            normalize_readings(readings)

        assert exc_info.value.timestamp == T0

    def test_conflicting_rate_raises(self):
        with pytest.raises(ConflictingDuplicate):
            normalize_readings([reading(0, 1, 10.0), reading(0, 1, 12.0)])


class TestClassifyPair:
    """Test the first-match-wins classification rules."""

    def test_normal(self):
        delta = classify_pair(reading(0, 100), reading(5, 104))

        assert delta.classification is DeltaClassification.NORMAL
        assert delta.raw_delta == 4
        assert delta.corrected_delta == 4
        assert delta.duration_minutes == 5

    def test_reset_to_zero(self):
        delta = classify_pair(reading(0, 980), reading(5, 0))

        assert delta.classification is DeltaClassification.COUNTER_RESET
        assert delta.raw_delta == -980
        assert delta.corrected_delta == 0

    def test_reset_after_restart(self):
        """Test the corrected delta counts from zero, not prev + next."""
        delta = classify_pair(reading(0, 980), reading(5, 15))

        assert delta.classification is DeltaClassification.COUNTER_RESET
        assert delta.corrected_delta == 15

    def test_restart_near_zero_within_tolerance(self):
        """Test a small drop to near zero from a materially larger value is a reset."""
        delta = classify_pair(reading(0, 12), reading(5, 3))

        assert delta.classification is DeltaClassification.COUNTER_RESET
        assert delta.corrected_delta == 3

    def test_small_jitter_is_not_a_reset(self):
        delta = classify_pair(reading(0, 500), reading(5, 495))

        assert delta.classification is DeltaClassification.NORMAL
        assert delta.corrected_delta == -5
        assert not delta.qualifies()

    def test_spike_depends_on_policy(self):
        prev, nxt = reading(0, 100), reading(5, 125)

        assert classify_pair(prev, nxt, AUDIT_POLICY).classification is DeltaClassification.SPIKE
        assert classify_pair(prev, nxt, DASHBOARD_POLICY).classification is DeltaClassification.NORMAL

    def test_gap_wins_over_spike(self):
        delta = classify_pair(reading(0, 100), reading(30, 400))

        assert delta.classification is DeltaClassification.GAP
        assert delta.corrected_delta == 300
        assert not delta.excluded

    def test_large_gap_is_excluded(self):
        delta = classify_pair(reading(0, 100), reading(90, 150))

        assert delta.classification is DeltaClassification.GAP
        assert delta.excluded
        assert not delta.qualifies(include_spikes=True)

    def test_gap_across_reset_counts_from_zero(self):
        delta = classify_pair(reading(0, 900), reading(20, 12))

        assert delta.classification is DeltaClassification.GAP
        assert delta.corrected_delta == 12

    def test_gap_threshold_is_exclusive(self):
        delta = classify_pair(reading(0, 100), reading(15, 110))

        assert delta.classification is DeltaClassification.NORMAL


class TestComputeDeltas:
    """Test totals over a reading stream."""

    def test_monotonic_total_equals_last_minus_first(self):
        readings = series(T0, [0, 2, 5, 9, 12, 20, 27])

        report = compute_deltas(readings)

        assert report.production_total() == pytest.approx(27)
        assert report.anomalies == ()

    def test_counter_reset_sequence(self):
        """Test DoD: [980, 0, 15] totals 15, never -980 or 995."""
        readings = series(T0, [980, 0, 15])

        report = compute_deltas(readings)

        assert report.deltas[0].classification is DeltaClassification.COUNTER_RESET
        assert report.deltas[1].classification is DeltaClassification.NORMAL
        assert report.production_total() == 15
        assert report.raw_total == 15
        assert [a.kind for a in report.anomalies] == [AnomalyKind.COUNTER_RESET]

    def test_reset_in_the_middle_of_production(self):
        readings = series(T0, [960, 970, 980, 4, 9, 14])

        report = compute_deltas(readings)

        # 10 + 10 before the reset, 5 + 5 after it
        assert report.production_total() == 30
        # The restart itself produced 4 t
        assert report.raw_total == 34

    def test_gap_and_spike_scenario(self):
        """Test DoD: 90-minute gap and 150 t spike leave the anomaly-free total."""
        readings = [
            reading(0, 100),
            reading(5, 105),
            reading(95, 110),
            reading(100, 260),
            reading(105, 262),
        ]

        report = compute_deltas(readings)
        classes = [d.classification for d in report.deltas]

        assert classes == [
            DeltaClassification.NORMAL,
            DeltaClassification.GAP,
            DeltaClassification.SPIKE,
            DeltaClassification.NORMAL,
        ]
        assert report.anomaly_free_total == 7
        # Spike stays in the raw total; the excluded 90-minute gap does not
        assert report.raw_total == 157
        assert report.production_total(include_spikes=True) == 157
        assert {a.kind for a in report.anomalies} == {AnomalyKind.GAP, AnomalyKind.SPIKE}

    def test_short_gap_kept_in_raw_total_only(self):
        readings = [reading(0, 100), reading(30, 130), reading(35, 135)]

        report = compute_deltas(readings)

        assert report.production_total() == 5
        assert report.raw_total == 35

    def test_policy_includes_spikes(self):
        policy = DeltaPolicy(spike_threshold=20, include_spikes=True)
        readings = series(T0, [0, 5, 50, 55])

        report = compute_deltas(readings, policy)

        assert report.production_total() == 55
        assert report.anomaly_free_total == 10

    def test_negative_deltas_never_contribute(self):
        readings = series(T0, [100, 110, 105, 120])

        report = compute_deltas(readings)

        assert report.production_total() == 25
        assert report.raw_total == 25

    def test_empty_and_single_reading(self):
        assert compute_deltas([]).production_total() == 0
        single = compute_deltas([reading(0, 5)])
        assert single.deltas == ()
        assert single.production_total() == 0

    def test_out_of_range_rates(self):
        readings = [reading(0, 0, 40), reading(5, 3, 250), reading(10, 6, -1)]

        report = compute_deltas(readings)
        rate_anomalies = [a for a in report.anomalies if a.kind is AnomalyKind.RATE_OUT_OF_RANGE]

        assert [a.magnitude for a in rate_anomalies] == [250, -1]

    def test_classification_counts(self):
        readings = series(T0, [980, 0, 15, 200])

        counts = compute_deltas(readings).classification_counts()

        assert counts == {"normal": 1, "counter_reset": 1, "spike": 1, "gap": 0}

    def test_total_between_requires_containment(self):
        readings = series(T0, [0, 10, 20])
        report = compute_deltas(readings)
        # Window ends 3 minutes into the second interval
        end = T0 + timedelta(minutes=8)

        assert report.total_between(T0, end) == 10
        assert len(report.deltas_between(T0, end)) == 1
        assert report.total_between(T0, end, contained=False) == 20

    def test_to_dict(self):
        data = compute_deltas(series(T0, [0, 5, 10])).to_dict()

        assert data["readings_count"] == 3
        assert data["production_total"] == 10
        assert data["classification_counts"]["normal"] == 2


def test_gap_report():
    readings = [reading(0, 0), reading(20, 10), reading(25, 12), reading(125, 30)]

    summary = gap_report(compute_deltas(readings))

    assert summary["total_gaps"] == 2
    assert summary["over_large_gap_threshold"] == 1
    assert summary["longest_gap_minutes"] == 100
    assert summary["details"][1]["excluded"] is True
