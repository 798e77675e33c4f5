"""meterledger: production accounting over monotonic meter readings."""

from .config import EngineSettings, get_settings, load_settings
from .core import ElapsedBasis, MeterReading, ProductionDay, ShiftAggregate, ShiftType
from .correction import CorrectionRequest, CorrectionService
from .rollups import ForecastEngine, RollupEngine, compute_deltas
from .storage import InMemoryMeterStore, MeterStore, SQLiteMeterStore

__version__ = "0.1.0"

__all__ = [
    "CorrectionRequest",
    "CorrectionService",
    "ElapsedBasis",
    "EngineSettings",
    "ForecastEngine",
    "InMemoryMeterStore",
    "MeterReading",
    "MeterStore",
    "ProductionDay",
    "RollupEngine",
    "SQLiteMeterStore",
    "ShiftAggregate",
    "ShiftType",
    "compute_deltas",
    "get_settings",
    "load_settings",
    "__version__",
]
