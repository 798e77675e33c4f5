"""Reading and shift-aggregate stores."""

from .store import InMemoryMeterStore, MeterStore, SQLiteMeterStore, preceding_shift

__all__ = [
    "InMemoryMeterStore",
    "MeterStore",
    "SQLiteMeterStore",
    "preceding_shift",
]
