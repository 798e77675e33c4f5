"""Reading and shift-aggregate stores.

The engine reads meter readings and shift aggregates through
:class:`MeterStore`. The only write it ever performs is
:meth:`MeterStore.apply_correction`, a compare-and-set on a single aggregate's
``difference`` that adds audit fields instead of deleting history.

Two implementations are provided:

- :class:`InMemoryMeterStore` for tests and embedding (guarded by a lock)
- :class:`SQLiteMeterStore` backed by a local SQLite database
"""

from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..core.errors import ShiftAggregateNotFound, StaleAggregate
from ..core.models import MeterReading, ShiftAggregate, ShiftType
from ..core.time import ensure_utc, format_utc_iso8601, get_current_utc, parse_utc_iso8601
from ..observability import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = [
    "InMemoryMeterStore",
    "MeterStore",
    "SQLiteMeterStore",
    "preceding_shift",
]

log = get_logger("storage")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def preceding_shift(production_date: date, shift_type: ShiftType) -> tuple[date, ShiftType]:
    """Shift immediately before the given one.

    The night shift of ``D`` follows the day shift of ``D``; the day shift of
    ``D`` follows the night shift that started on ``D - 1``.
    """
    if shift_type is ShiftType.NIGHT:
        return production_date, ShiftType.DAY
    return production_date - timedelta(days=1), ShiftType.NIGHT


class MeterStore(ABC):
    """Read access to readings and aggregates plus the correction write."""

    @abstractmethod
    def fetch_readings(
        self,
        start: datetime,
        end: datetime,
        *,
        inclusive_end: bool = False,
    ) -> list[MeterReading]:
        """Readings with ``start <= timestamp < end`` (``<= end`` when inclusive), ascending."""

    @abstractmethod
    def get_shift_aggregate(self, production_date: date, shift_type: ShiftType) -> ShiftAggregate | None:
        """Stored aggregate of one shift, or None.

        Returns a snapshot: later updates to the store do not change it.
        """

    @abstractmethod
    def list_shift_aggregates(self, start_date: date, end_date: date) -> list[ShiftAggregate]:
        """Aggregates with ``start_date <= production_date <= end_date``."""

    @abstractmethod
    def apply_correction(
        self,
        aggregate_id: str,
        *,
        expected_difference: float,
        new_difference: float,
        reason: str,
        corrected_at: datetime | None = None,
    ) -> tuple[int, int]:
        """Conditionally replace an aggregate's ``difference``.

        The update only happens when the stored ``difference`` still equals
        ``expected_difference``. Re-applying a correction that is already in
        place matches the record without modifying it.

        Parameters
        ----------
        aggregate_id
            Aggregate to update
        expected_difference
            ``difference`` observed when the correction was diagnosed
        new_difference
            Corrected value
        reason
            Audit reason ("counter_reset" or "manual_fix")
        corrected_at
            Audit timestamp (default: now)

        Returns
        -------
        tuple[int, int]
            ``(matched_count, modified_count)``

        Raises
        ------
        ShiftAggregateNotFound
            If no aggregate has ``aggregate_id``
        StaleAggregate
            If the stored ``difference`` changed since the diagnosis
        """

    def get_preceding_shift_aggregate(self, production_date: date, shift_type: ShiftType) -> ShiftAggregate | None:
        prev_date, prev_type = preceding_shift(production_date, shift_type)
        return self.get_shift_aggregate(prev_date, prev_type)


def _already_applied(aggregate: ShiftAggregate, new_difference: float) -> bool:
    return aggregate.corrected and aggregate.difference == new_difference


class InMemoryMeterStore(MeterStore):
    """Process-local store.

    Example
    -------
    >>> store = InMemoryMeterStore()
    >>> store.add_readings(readings)
    >>> store.add_shift_aggregate(aggregate)
    """

    def __init__(
        self,
        readings: Iterable[MeterReading] = (),
        aggregates: Iterable[ShiftAggregate] = (),
    ) -> None:
        self._lock = threading.Lock()
        self._readings: list[MeterReading] = []
        self._aggregates: dict[str, ShiftAggregate] = {}
        self.add_readings(readings)
        for aggregate in aggregates:
            self.add_shift_aggregate(aggregate)

    def add_readings(self, readings: Iterable[MeterReading]) -> None:
        with self._lock:
            self._readings.extend(readings)
            self._readings.sort(key=lambda r: r.timestamp)

    def add_shift_aggregate(self, aggregate: ShiftAggregate) -> None:
        with self._lock:
            self._aggregates[aggregate.id] = replace(aggregate)

    def fetch_readings(
        self,
        start: datetime,
        end: datetime,
        *,
        inclusive_end: bool = False,
    ) -> list[MeterReading]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        with self._lock:
            if inclusive_end:
                return [r for r in self._readings if start <= r.timestamp <= end]
            return [r for r in self._readings if start <= r.timestamp < end]

    def get_shift_aggregate(self, production_date: date, shift_type: ShiftType) -> ShiftAggregate | None:
        with self._lock:
            for aggregate in self._aggregates.values():
                if aggregate.production_date == production_date and aggregate.shift_type is shift_type:
                    return replace(aggregate)
        return None

    def list_shift_aggregates(self, start_date: date, end_date: date) -> list[ShiftAggregate]:
        with self._lock:
            found = [
                replace(a) for a in self._aggregates.values() if start_date <= a.production_date <= end_date
            ]
        return sorted(found, key=lambda a: (a.production_date, a.shift_type is ShiftType.NIGHT))

    def apply_correction(
        self,
        aggregate_id: str,
        *,
        expected_difference: float,
        new_difference: float,
        reason: str,
        corrected_at: datetime | None = None,
    ) -> tuple[int, int]:
        with self._lock:
            aggregate = self._aggregates.get(aggregate_id)
            if aggregate is None:
                raise ShiftAggregateNotFound(f"Shift aggregate not found: {aggregate_id}")
            if _already_applied(aggregate, new_difference):
                return 1, 0
            if aggregate.difference != expected_difference:
                raise StaleAggregate(aggregate_id, expected_difference, aggregate.difference)

            aggregate.original_difference = aggregate.difference
            aggregate.difference = new_difference
            aggregate.corrected = True
            aggregate.corrected_at = ensure_utc(corrected_at) if corrected_at else get_current_utc()
            aggregate.correction_reason = reason

        log.info("Corrected shift aggregate {}: {} -> {}", aggregate_id, expected_difference, new_difference)
        return 1, 1


def _to_micros(instant: datetime) -> int:
    return (ensure_utc(instant) - _EPOCH) // _MICROSECOND


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


class SQLiteMeterStore(MeterStore):
    """SQLite-backed store.

    Readings are keyed by integer UTC microseconds so range scans compare
    exactly. Corrections run as a single conditional ``UPDATE`` inside one
    transaction.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize store.

        Parameters
        ----------
        db_path
            Path to SQLite database (``":memory:"`` for a private in-memory DB)
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS readings (
                ts_us INTEGER NOT NULL,
                cumulative_value REAL NOT NULL,
                instantaneous_rate REAL NOT NULL DEFAULT 0
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_readings_ts
            ON readings(ts_us)
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS shift_aggregates (
                id TEXT PRIMARY KEY,
                production_date TEXT NOT NULL,
                shift_type TEXT NOT NULL,
                difference REAL NOT NULL,
                value REAL NOT NULL,
                recorded_at TEXT,
                corrected INTEGER NOT NULL DEFAULT 0,
                corrected_at TEXT,
                correction_reason TEXT,
                original_difference REAL,
                UNIQUE (production_date, shift_type)
            )
        """
        )

        conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def add_readings(self, readings: Iterable[MeterReading]) -> int:
        rows = [(_to_micros(r.timestamp), r.cumulative_value, r.instantaneous_rate) for r in readings]
        with self._lock:
            conn = self._get_connection()
            conn.executemany(
                "INSERT INTO readings (ts_us, cumulative_value, instantaneous_rate) VALUES (?, ?, ?)",
                rows,
            )
            conn.commit()
        log.debug("Stored {} readings", len(rows))
        return len(rows)

    def add_shift_aggregate(self, aggregate: ShiftAggregate) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT OR REPLACE INTO shift_aggregates
                (id, production_date, shift_type, difference, value, recorded_at,
                 corrected, corrected_at, correction_reason, original_difference)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    aggregate.id,
                    aggregate.production_date.isoformat(),
                    aggregate.shift_type.value,
                    aggregate.difference,
                    aggregate.value,
                    format_utc_iso8601(aggregate.recorded_at) if aggregate.recorded_at else None,
                    int(aggregate.corrected),
                    format_utc_iso8601(aggregate.corrected_at) if aggregate.corrected_at else None,
                    aggregate.correction_reason,
                    aggregate.original_difference,
                ),
            )
            conn.commit()

    def fetch_readings(
        self,
        start: datetime,
        end: datetime,
        *,
        inclusive_end: bool = False,
    ) -> list[MeterReading]:
        upper = "<=" if inclusive_end else "<"
        with self._lock:
            cursor = self._get_connection().execute(
                f"SELECT * FROM readings WHERE ts_us >= ? AND ts_us {upper} ? ORDER BY ts_us",
                (_to_micros(start), _to_micros(end)),
            )
            rows = cursor.fetchall()
        return [
            MeterReading(
                timestamp=_from_micros(row["ts_us"]),
                cumulative_value=row["cumulative_value"],
                instantaneous_rate=row["instantaneous_rate"],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_aggregate(row: sqlite3.Row) -> ShiftAggregate:
        return ShiftAggregate(
            id=row["id"],
            production_date=date.fromisoformat(row["production_date"]),
            shift_type=ShiftType(row["shift_type"]),
            difference=row["difference"],
            value=row["value"],
            recorded_at=parse_utc_iso8601(row["recorded_at"]) if row["recorded_at"] else None,
            corrected=bool(row["corrected"]),
            corrected_at=parse_utc_iso8601(row["corrected_at"]) if row["corrected_at"] else None,
            correction_reason=row["correction_reason"],
            original_difference=row["original_difference"],
        )

    def _select_aggregates(self, where: str, params: tuple[Any, ...]) -> list[ShiftAggregate]:
        with self._lock:
            cursor = self._get_connection().execute(
                f"SELECT * FROM shift_aggregates WHERE {where} "
                "ORDER BY production_date, CASE shift_type WHEN 'day' THEN 0 ELSE 1 END",
                params,
            )
            rows = cursor.fetchall()
        return [self._row_to_aggregate(row) for row in rows]

    def get_shift_aggregate(self, production_date: date, shift_type: ShiftType) -> ShiftAggregate | None:
        found = self._select_aggregates(
            "production_date = ? AND shift_type = ?", (production_date.isoformat(), shift_type.value)
        )
        return found[0] if found else None

    def list_shift_aggregates(self, start_date: date, end_date: date) -> list[ShiftAggregate]:
        return self._select_aggregates(
            "production_date >= ? AND production_date <= ?", (start_date.isoformat(), end_date.isoformat())
        )

    def apply_correction(
        self,
        aggregate_id: str,
        *,
        expected_difference: float,
        new_difference: float,
        reason: str,
        corrected_at: datetime | None = None,
    ) -> tuple[int, int]:
        stamp = format_utc_iso8601(corrected_at if corrected_at else get_current_utc())

        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    UPDATE shift_aggregates
                    SET original_difference = difference,
                        difference = ?,
                        corrected = 1,
                        corrected_at = ?,
                        correction_reason = ?
                    WHERE id = ? AND difference = ?
                      AND NOT (corrected = 1 AND difference = ?)
                """,
                    (new_difference, stamp, reason, aggregate_id, expected_difference, new_difference),
                )
                modified = cursor.rowcount
                if modified:
                    conn.commit()
                    log.info(
                        "Corrected shift aggregate {}: {} -> {}", aggregate_id, expected_difference, new_difference
                    )
                    return 1, 1

                row = conn.execute(
                    "SELECT * FROM shift_aggregates WHERE id = ?", (aggregate_id,)
                ).fetchone()
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

        if row is None:
            raise ShiftAggregateNotFound(f"Shift aggregate not found: {aggregate_id}")
        current = self._row_to_aggregate(row)
        if _already_applied(current, new_difference):
            return 1, 0
        raise StaleAggregate(aggregate_id, expected_difference, current.difference)

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SQLiteMeterStore:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
