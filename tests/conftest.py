"""Shared pytest configuration."""

from __future__ import annotations

import pytest

from meterledger.config.settings import EngineSettings
from meterledger.core.models import MeterReading
from meterledger.rollups.engine import RollupEngine

from .builders import production_day


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def engine(settings: EngineSettings) -> RollupEngine:
    return RollupEngine(settings)


@pytest.fixture
def production_day_readings() -> list[MeterReading]:
    """Production day 2025-10-07: 0 t at 20:00, 430 t at 08:00, 1020 t at 20:00 next day (local)."""
    return production_day(2025, 10, 7)
