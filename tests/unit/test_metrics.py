"""Tests for equipment metric tagging and aggregation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from meterledger.core.errors import MetricUnitMismatch, UnknownMetric
from meterledger.rollups.metrics import (
    MetricDefinition,
    MetricId,
    MetricRegistry,
    MetricSample,
    aggregate_collections,
    aggregate_metric_samples,
    clean_unit,
    out_of_norm,
)
from tests.builders import local_dt

PRESS_TEMP = MetricId("press_1", "temperature")
PRESS_CURRENT = MetricId("press_1", "current")
COOKER_TEMP = MetricId("cooker", "temperature")


@pytest.fixture
def registry() -> MetricRegistry:
    return MetricRegistry(
        [
            MetricDefinition(PRESS_TEMP, "Temperature", "°C", 90.0, 110.0),
            MetricDefinition(PRESS_CURRENT, "Motor current", "A", None, 250.0),
            MetricDefinition(COOKER_TEMP, "Temperature", "°C", 95.0, 105.0),
        ]
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("Celsius", "°C"), ("А ампер", "A"), ("ампер", "A"), ("% процент", "%"), (" bar ", "bar")],
)
def test_clean_unit(raw, expected):
    assert clean_unit(raw) == expected


class TestMetricId:
    def test_parse_and_str(self):
        metric_id = MetricId.parse("press_1/temperature")

        assert metric_id == PRESS_TEMP
        assert str(metric_id) == "press_1/temperature"

    @pytest.mark.parametrize("value", ["temperature", "/temperature", "press_1/"])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            MetricId.parse(value)


class TestRegistry:
    """Test metric definitions and title resolution."""

    def test_resolve_title_per_collection(self, registry):
        assert registry.resolve_title("press_1", "Temperature") == PRESS_TEMP
        assert registry.resolve_title("cooker", "Temperature") == COOKER_TEMP

    def test_unknown_metric(self, registry):
        with pytest.raises(UnknownMetric):
            registry.get(MetricId("press_2", "temperature"))
        with pytest.raises(KeyError):
            registry.resolve_title("press_1", "Pressure")

    def test_duplicates_rejected(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.register(MetricDefinition(PRESS_TEMP, "Temp", "°C"))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(MetricDefinition(MetricId("press_1", "temp2"), "Temperature", "°C"))

    def test_listing(self, registry):
        assert len(registry) == 3
        assert PRESS_TEMP in registry
        assert registry.collections() == ["cooker", "press_1"]
        assert [d.metric_id for d in registry.definitions("press_1")] == [PRESS_CURRENT, PRESS_TEMP]

    def test_invalid_norm_range(self):
        with pytest.raises(ValueError):
            MetricDefinition(PRESS_TEMP, "Temperature", "°C", 110.0, 90.0)


class TestSampleFromPayload:
    """Test tagging of upstream title/value/unit entries."""

    def test_known_titles(self, registry):
        sample = registry.sample_from_payload(
            "press_1",
            local_dt(2025, 10, 8, 10),
            [
                {"title": "Temperature", "value": "101.5", "metric_unit": "Celsius"},
                {"title": "Motor current", "value": 180, "metric_unit": "А ампер"},
            ],
        )

        assert dict(sample.values) == {PRESS_TEMP: 101.5, PRESS_CURRENT: 180.0}

    def test_unknown_title_strict(self, registry):
        with pytest.raises(UnknownMetric):
            registry.sample_from_payload("press_1", local_dt(2025, 10, 8, 10), [{"title": "Pressure", "value": 3}])

    def test_unit_mismatch_strict(self, registry):
        payload = [{"title": "Temperature", "value": 101.5, "metric_unit": "bar"}]

        with pytest.raises(MetricUnitMismatch) as exc_info:
            registry.sample_from_payload("press_1", local_dt(2025, 10, 8, 10), payload)

        assert exc_info.value.expected == "°C"
        assert exc_info.value.actual == "bar"

    def test_lenient_mode_skips(self, registry):
        payload = [
            {"title": "Temperature", "value": 101.5},
            {"title": "Pressure", "value": 3},
            {"title": "Motor current", "value": 180, "metric_unit": "bar"},
        ]

        sample = registry.sample_from_payload("press_1", local_dt(2025, 10, 8, 10), payload, strict=False)

        assert dict(sample.values) == {PRESS_TEMP: 101.5}


def test_sample_values_are_read_only():
    sample = MetricSample(local_dt(2025, 10, 8, 10), {PRESS_TEMP: 100.0})

    with pytest.raises(TypeError):
        sample.values[PRESS_TEMP] = 1.0
    assert sample.to_dict()["values"] == {"press_1/temperature": 100.0}


class TestAggregation:
    """Test local-grid averaging of samples."""

    def test_thirty_minute_buckets(self, registry):
        start = local_dt(2025, 10, 8, 10)
        samples = [
            MetricSample(start + timedelta(minutes=5 * i), {PRESS_TEMP: 100.0 + i, PRESS_CURRENT: 200.0})
            for i in range(8)
        ]

        points = aggregate_metric_samples(reversed(samples), registry=registry)

        assert [p.time for p in points] == ["10:00", "10:30"]
        assert [p.sample_count for p in points] == [6, 2]
        assert points[0].values[PRESS_TEMP] == 102.5
        assert points[1].values[PRESS_TEMP] == 106.5
        assert points[0].to_dict()["press_1/current"] == 200.0

    def test_buckets_keep_the_date(self):
        """Test the same clock time on two days stays in two buckets."""
        samples = [
            MetricSample(local_dt(2025, 10, 8, 10, 5), {PRESS_TEMP: 100.0}),
            MetricSample(local_dt(2025, 10, 9, 10, 5), {PRESS_TEMP: 110.0}),
        ]

        points = aggregate_metric_samples(samples)

        assert len(points) == 2
        assert points[0].time == points[1].time == "10:00"

    def test_unregistered_key_rejected(self, registry):
        samples = [MetricSample(local_dt(2025, 10, 8, 10), {MetricId("press_9", "x"): 1.0})]

        with pytest.raises(UnknownMetric):
            aggregate_metric_samples(samples, registry=registry)

    def test_rounding(self):
        samples = [
            MetricSample(local_dt(2025, 10, 8, 10, 0), {PRESS_TEMP: 1.0}),
            MetricSample(local_dt(2025, 10, 8, 10, 5), {PRESS_TEMP: 1.0}),
            MetricSample(local_dt(2025, 10, 8, 10, 10), {PRESS_TEMP: 2.0}),
        ]

        (point,) = aggregate_metric_samples(samples, precision=2)

        assert point.values[PRESS_TEMP] == 1.33


def test_aggregate_collections_matches_sequential(registry):
    start = local_dt(2025, 10, 8, 10)
    collections = {
        "press_1": [MetricSample(start + timedelta(minutes=5 * i), {PRESS_TEMP: 100.0 + i}) for i in range(12)],
        "cooker": [MetricSample(start + timedelta(minutes=5 * i), {COOKER_TEMP: 98.0}) for i in range(12)],
    }

    results = aggregate_collections(collections, registry=registry, max_workers=2)

    assert list(results) == ["cooker", "press_1"]
    for name, samples in collections.items():
        assert results[name] == aggregate_metric_samples(samples, registry=registry)


def test_out_of_norm(registry):
    samples = [
        MetricSample(local_dt(2025, 10, 8, 10, 5), {PRESS_TEMP: 112.0, PRESS_CURRENT: 200.0}),
        MetricSample(local_dt(2025, 10, 8, 10, 0), {PRESS_TEMP: 100.0, PRESS_CURRENT: 260.0}),
    ]

    findings = out_of_norm(samples, registry)

    assert [(f["metric_id"], f["value"]) for f in findings] == [(PRESS_CURRENT, 260.0), (PRESS_TEMP, 112.0)]
    assert findings[1]["norm_max"] == 110.0


def test_metrics_exported_from_rollups():
    from meterledger import rollups

    assert rollups.MetricRegistry is MetricRegistry
    assert rollups.aggregate_collections is aggregate_collections
