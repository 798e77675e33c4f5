"""Tests for bucketing and production-day grouping."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from meterledger.core.models import MeterReading
from meterledger.rollups.aggregator import bucket, floor_to_bucket, group_by_production_day, hourly_breakdown
from tests.builders import linear_readings, local_dt, series


def test_floor_to_bucket_uses_local_grid():
    instant = local_dt(2025, 10, 8, 10, 44, 59)

    assert floor_to_bucket(instant, 30, 5) == local_dt(2025, 10, 8, 10, 30)
    assert floor_to_bucket(instant, 15, 5) == local_dt(2025, 10, 8, 10, 30)
    assert floor_to_bucket(local_dt(2025, 10, 8, 10, 45), 15, 5) == local_dt(2025, 10, 8, 10, 45)


def test_bucket_rejects_other_sizes():
    with pytest.raises(ValueError, match="bucket_size_minutes"):
        bucket([], bucket_size_minutes=45)


def test_bucket_thirty_minutes():
    # 10:00 .. 11:00 every 5 minutes, +5 t each
    readings = series(local_dt(2025, 10, 8, 10), [5.0 * i for i in range(13)], rate=60.0)

    buckets = bucket(readings, 30, 5)

    assert [b.bucket_start for b in buckets] == [
        local_dt(2025, 10, 8, 10, 0),
        local_dt(2025, 10, 8, 10, 30),
        local_dt(2025, 10, 8, 11, 0),
    ]
    assert [b.sample_count for b in buckets] == [6, 6, 1]
    assert [b.total_production for b in buckets] == [30, 30, 0]
    assert buckets[0].average_rate == 60.0
    assert buckets[0].bucket_end - buckets[0].bucket_start == timedelta(minutes=30)


def test_bucket_fifteen_minutes():
    readings = series(local_dt(2025, 10, 8, 10), [5.0 * i for i in range(7)])

    buckets = bucket(readings, 15, 5)

    assert [b.sample_count for b in buckets] == [3, 3, 1]
    assert [b.total_production for b in buckets] == [15, 15, 0]


def test_bucket_excludes_straddling_delta():
    """Test a delta crossing a bucket edge is counted in neither bucket."""
    readings = [
        MeterReading(local_dt(2025, 10, 8, 10, 25), 100.0, 50.0),
        MeterReading(local_dt(2025, 10, 8, 10, 35), 108.0, 50.0),
    ]

    buckets = bucket(readings, 30, 5)

    assert [b.total_production for b in buckets] == [0, 0]


def test_bucket_is_idempotent():
    readings = series(local_dt(2025, 10, 8, 10), [0, 4, 9, 15, 980, 0, 6, 12], rate=42.0)

    first = bucket(readings, 30, 5)
    second = bucket(list(reversed(readings)), 30, 5)

    assert first == second
    assert bucket(readings, 30, 5) == first


def test_bucket_average_rate():
    readings = [
        MeterReading(local_dt(2025, 10, 8, 10, 0), 0.0, 40.0),
        MeterReading(local_dt(2025, 10, 8, 10, 5), 4.0, 60.0),
    ]

    (only,) = bucket(readings, 30, 5)

    assert only.average_rate == 50.0
    assert only.total_production == 4.0


def test_group_by_production_day_splits_on_cutoff():
    # 18:00 .. 22:00 local on Oct 8, rising 4 t per 5 minutes
    readings = linear_readings(local_dt(2025, 10, 8, 18), local_dt(2025, 10, 8, 22), 0.0, 192.0)

    groups = group_by_production_day(readings, 5)

    assert list(groups) == [date(2025, 10, 7), date(2025, 10, 8)]
    before, after = groups.values()
    assert len(before.readings) == 24
    assert len(after.readings) == 25
    assert before.total_production == pytest.approx(96.0)
    assert after.total_production == pytest.approx(96.0)
    # 18:00-20:00 is the day shift of Oct 8, 20:00-22:00 the night shift of Oct 8
    assert before.day_shift_total == pytest.approx(96.0)
    assert before.night_shift_total == 0
    assert after.night_shift_total == pytest.approx(96.0)


def test_group_by_production_day_shift_split(production_day_readings):
    groups = group_by_production_day(production_day_readings, 5)

    group = groups[date(2025, 10, 7)]
    assert group.night_shift_total == pytest.approx(430.0)
    assert group.day_shift_total == pytest.approx(590.0)
    # The closing 20:00 reading opens the next production day
    assert len(groups[date(2025, 10, 8)].readings) == 1
    assert group.to_dict()["total_production"] == pytest.approx(1020.0)


def test_group_by_production_day_skips_straddling_deltas():
    readings = series(local_dt(2025, 10, 7, 19, 57, 30), [100, 104, 108, 112])

    groups = group_by_production_day(readings, 5)

    before, after = groups[date(2025, 10, 6)], groups[date(2025, 10, 7)]
    assert before.deltas == []
    assert before.total_production == 0
    assert len(after.deltas) == 2
    assert after.total_production == 8
    assert after.night_shift_total == 8

    by_midpoint = group_by_production_day(readings, 5, contained=False)
    assert by_midpoint[date(2025, 10, 7)].total_production == 12


def test_group_by_production_day_shift_change_straddle():
    readings = series(local_dt(2025, 10, 8, 7, 52, 30), [0, 4, 8, 12])

    group = group_by_production_day(readings, 5)[date(2025, 10, 7)]

    assert group.night_shift_total == 4
    assert group.day_shift_total == 4
    assert group.total_production == 12


def test_group_by_production_day_collects_anomalies():
    readings = series(local_dt(2025, 10, 8, 21), [980, 0, 15])

    groups = group_by_production_day(readings, 5)

    group = groups[date(2025, 10, 8)]
    assert len(group.anomalies) == 1
    assert group.total_production == 15


def test_hourly_breakdown():
    readings = linear_readings(local_dt(2025, 10, 8, 10), local_dt(2025, 10, 8, 11), 0.0, 60.0, rate=60.0)

    hours = hourly_breakdown(readings, 5)

    assert [h["hour"] for h in hours] == ["2025-10-08T10:00", "2025-10-08T11:00"]
    assert hours[0]["count"] == 12
    assert hours[0]["production"] == pytest.approx(60.0)
    assert hours[0]["avg_rate"] == 60.0
    assert hours[0]["first_record"].startswith("2025-10-08T10:00:00")
    assert hours[1]["count"] == 1
