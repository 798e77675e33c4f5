"""Technical metrics of plant equipment.

Equipment collections (presses, extractor, cooker) report free-form
``{title, value, metric_unit}`` triples. Inside the engine each value is keyed
by a stable :class:`MetricId` and validated against a :class:`MetricRegistry`
of known definitions before it is aggregated.
"""

from __future__ import annotations

import re
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from ..core.errors import MetricUnitMismatch, UnknownMetric
from ..core.time import ensure_utc, format_utc_iso8601
from ..observability import get_logger, timing_context
from .aggregator import floor_to_bucket
from .time_windows import to_local

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

__all__ = [
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

log = get_logger("rollup")

# Upstream unit labels mix English, Russian and symbols
_UNIT_REPLACEMENTS = (
    (re.compile(r"celsius", re.IGNORECASE), "°C"),
    (re.compile(r"[AА] ампер", re.IGNORECASE), "A"),
    (re.compile(r"ампер", re.IGNORECASE), "A"),
    (re.compile(r"% процент", re.IGNORECASE), "%"),
    (re.compile(r"процент", re.IGNORECASE), "%"),
)


def clean_unit(unit: str) -> str:
    """Normalise an upstream unit label ("Celsius" -> "°C", "А ампер" -> "A")."""
    for pattern, replacement in _UNIT_REPLACEMENTS:
        unit = pattern.sub(replacement, unit)
    return unit.strip()


@dataclass(frozen=True, order=True)
class MetricId:
    """Stable metric key: equipment collection plus metric name."""

    collection: str
    name: str

    @classmethod
    def parse(cls, value: str) -> MetricId:
        """Parse ``"collection/name"``."""
        collection, sep, name = value.partition("/")
        if not sep or not collection or not name:
            raise ValueError(f"Invalid metric id: {value!r} (expected 'collection/name')")
        return cls(collection, name)

    def __str__(self) -> str:
        return f"{self.collection}/{self.name}"


@dataclass(frozen=True)
class MetricDefinition:
    """Known metric with display title, unit and optional norm range.

    Attributes
    ----------
    metric_id : MetricId
        Stable key
    title : str
        Title the upstream collection reports the metric under
    unit : str
        Normalised unit (see :func:`clean_unit`)
    norm_min, norm_max : float | None
        Inclusive bounds of the normal operating range
    """

    metric_id: MetricId
    title: str
    unit: str
    norm_min: float | None = None
    norm_max: float | None = None

    def __post_init__(self) -> None:
        if self.norm_min is not None and self.norm_max is not None and self.norm_min > self.norm_max:
            raise ValueError(f"{self.metric_id}: norm_min {self.norm_min} > norm_max {self.norm_max}")

    def in_norm(self, value: float) -> bool:
        if self.norm_min is not None and value < self.norm_min:
            return False
        if self.norm_max is not None and value > self.norm_max:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_id": str(self.metric_id),
            "title": self.title,
            "unit": self.unit,
            "norm_min": self.norm_min,
            "norm_max": self.norm_max,
        }


class MetricRegistry:
    """Registry of metric definitions, resolvable by id or by reported title.

    Example
    -------
    >>> registry = MetricRegistry()
    >>> registry.register(MetricDefinition(MetricId("press_1", "temperature"), "Temperature", "°C", 90, 110))
    >>> registry.resolve_title("press_1", "Temperature")
    MetricId(collection='press_1', name='temperature')
    """

    def __init__(self, definitions: Iterable[MetricDefinition] = ()) -> None:
        self._definitions: dict[MetricId, MetricDefinition] = {}
        self._titles: dict[tuple[str, str], MetricId] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: MetricDefinition) -> None:
        """Add a definition.

        Raises
        ------
        ValueError
            If the id, or the title within its collection, is already taken
        """
        metric_id = definition.metric_id
        title_key = (metric_id.collection, definition.title)
        if metric_id in self._definitions:
            raise ValueError(f"Metric already registered: {metric_id}")
        if title_key in self._titles:
            raise ValueError(f"Title {definition.title!r} already registered in {metric_id.collection}")
        self._definitions[metric_id] = definition
        self._titles[title_key] = metric_id

    def get(self, metric_id: MetricId) -> MetricDefinition:
        try:
            return self._definitions[metric_id]
        except KeyError:
            raise UnknownMetric(str(metric_id)) from None

    def __contains__(self, metric_id: object) -> bool:
        return metric_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def resolve_title(self, collection: str, title: str) -> MetricId:
        try:
            return self._titles[(collection, title)]
        except KeyError:
            raise UnknownMetric(f"{collection}/{title}") from None

    def definitions(self, collection: str | None = None) -> list[MetricDefinition]:
        found = [
            d for d in self._definitions.values() if collection is None or d.metric_id.collection == collection
        ]
        return sorted(found, key=lambda d: d.metric_id)

    def collections(self) -> list[str]:
        return sorted({metric_id.collection for metric_id in self._definitions})

    def validate(self, values: Mapping[MetricId, float]) -> None:
        """Raise :class:`UnknownMetric` for any unregistered key."""
        for metric_id in values:
            if metric_id not in self._definitions:
                raise UnknownMetric(str(metric_id))

    def sample_from_payload(
        self,
        collection: str,
        timestamp: datetime,
        values: Iterable[Mapping[str, Any]],
        *,
        strict: bool = True,
    ) -> MetricSample:
        """Build a sample from upstream ``{title, value, metric_unit}`` entries.

        Parameters
        ----------
        collection
            Equipment collection the payload came from
        timestamp
            Sample instant
        values
            Upstream entries
        strict
            Raise on unknown titles and unit mismatches; otherwise skip them
            with a warning

        Raises
        ------
        UnknownMetric
            Unregistered title (strict mode)
        MetricUnitMismatch
            Unit differs from the registered one after normalisation (strict mode)
        """
        resolved: dict[MetricId, float] = {}
        for entry in values:
            title = entry["title"]
            try:
                metric_id = self.resolve_title(collection, title)
                definition = self._definitions[metric_id]
                unit = clean_unit(entry.get("metric_unit") or "")
                if unit and unit != definition.unit:
                    raise MetricUnitMismatch(str(metric_id), definition.unit, unit)
            except (UnknownMetric, MetricUnitMismatch) as exc:
                if strict:
                    raise
                log.warning("Skipping {} value {!r}: {}", collection, title, exc)
                continue
            resolved[metric_id] = float(entry["value"])
        return MetricSample(timestamp=timestamp, values=resolved)


@dataclass(frozen=True)
class MetricSample:
    """Tagged values of one equipment snapshot."""

    timestamp: datetime
    values: Mapping[MetricId, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_utc_iso8601(self.timestamp),
            "values": {str(k): v for k, v in sorted(self.values.items())},
        }


@dataclass(frozen=True)
class MetricPoint:
    """Averaged metric values of one grid bucket."""

    bucket_start: datetime
    time: str
    values: Mapping[MetricId, float]
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket_start": format_utc_iso8601(self.bucket_start),
            "time": self.time,
            "sample_count": self.sample_count,
            **{str(k): v for k, v in sorted(self.values.items())},
        }


def aggregate_metric_samples(
    samples: Iterable[MetricSample],
    *,
    registry: MetricRegistry | None = None,
    bucket_minutes: int = 30,
    tz_offset_hours: int = 5,
    precision: int = 2,
) -> list[MetricPoint]:
    """Average metric values on a local-time grid.

    Parameters
    ----------
    samples
        Samples in any order
    registry
        When given, every key is validated against it
    bucket_minutes
        Grid size (30 by default)
    tz_offset_hours
        Plant offset from UTC
    precision
        Decimal places of the averages

    Returns
    -------
    list[MetricPoint]
        One point per non-empty bucket, ordered by bucket start
    """
    grid: dict[datetime, dict[MetricId, list[float]]] = defaultdict(lambda: defaultdict(list))
    counts: dict[datetime, int] = defaultdict(int)

    for sample in samples:
        if registry is not None:
            registry.validate(sample.values)
        start = floor_to_bucket(sample.timestamp, bucket_minutes, tz_offset_hours)
        counts[start] += 1
        for metric_id, value in sample.values.items():
            grid[start][metric_id].append(value)

    return [
        MetricPoint(
            bucket_start=start,
            time=to_local(start, tz_offset_hours).strftime("%H:%M"),
            values=MappingProxyType(
                {
                    metric_id: round(sum(values) / len(values), precision)
                    for metric_id, values in sorted(grid[start].items())
                }
            ),
            sample_count=counts[start],
        )
        for start in sorted(counts)
    ]


def aggregate_collections(
    collections: Mapping[str, Iterable[MetricSample]],
    *,
    registry: MetricRegistry | None = None,
    bucket_minutes: int = 30,
    tz_offset_hours: int = 5,
    max_workers: int = 4,
) -> dict[str, list[MetricPoint]]:
    """Aggregate several equipment collections concurrently.

    Collections are disjoint, so each is aggregated in its own worker and the
    results are merged by collection name.
    """
    results: dict[str, list[MetricPoint]] = {}
    with timing_context("aggregate_collections", component="rollup", collections=len(collections)) as ctx:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_name = {
                executor.submit(
                    aggregate_metric_samples,
                    list(samples),
                    registry=registry,
                    bucket_minutes=bucket_minutes,
                    tz_offset_hours=tz_offset_hours,
                ): name
                for name, samples in collections.items()
            }
            for future in as_completed(future_to_name):
                results[future_to_name[future]] = future.result()
        ctx["points"] = sum(len(points) for points in results.values())
    return dict(sorted(results.items()))


def out_of_norm(samples: Iterable[MetricSample], registry: MetricRegistry) -> list[dict[str, Any]]:
    """Values outside their registered norm range, in time order."""
    findings = []
    for sample in sorted(samples, key=lambda s: s.timestamp):
        for metric_id, value in sorted(sample.values.items()):
            definition = registry.get(metric_id)
            if not definition.in_norm(value):
                findings.append(
                    {
                        "timestamp": sample.timestamp,
                        "metric_id": metric_id,
                        "value": value,
                        "norm_min": definition.norm_min,
                        "norm_max": definition.norm_max,
                        "unit": definition.unit,
                    }
                )
    return findings


