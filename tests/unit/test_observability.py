"""Tests for loguru configuration and timing instrumentation."""

from __future__ import annotations

import json
import sys

import pytest
from loguru import logger

from meterledger.observability import configure_loguru, get_logger, timing_context
from meterledger.rollups.engine import RollupEngine
from tests.builders import consecutive_days, local_dt


@pytest.fixture
def records():
    """Capture loguru records emitted during a test."""
    captured = []
    handler_id = logger.add(lambda message: captured.append(message.record), level="DEBUG", format="{message}")
    yield captured
    logger.remove(handler_id)


def test_get_logger_binds_component(records):
    get_logger("forecast").info("projected")

    assert records[-1]["extra"]["component"] == "forecast"
    assert records[-1]["message"] == "projected"


def test_timing_context_logs_start_and_end(records):
    with timing_context("rollup_days", component="rollup", days=3) as ctx:
        ctx["computed"] = 3

    start, end = [r for r in records if r["extra"].get("operation") == "rollup_days"]
    assert start["message"] == "START: rollup_days"
    assert start["level"].name == "DEBUG"
    assert end["message"] == "END: rollup_days"
    assert end["extra"]["component"] == "rollup"
    assert end["extra"]["computed"] == 3
    assert end["extra"]["duration_ms"] >= 0


def test_timing_context_logs_end_on_error(records):
    with pytest.raises(RuntimeError):
        with timing_context("apply_correction", component="correction"):
            raise RuntimeError("boom")

    assert records[-1]["message"] == "END: apply_correction"


def test_rollup_days_is_timed(records):
    RollupEngine().rollup_days(consecutive_days(2025, 10, 6, 2), now=local_dt(2025, 10, 9))

    end = next(r for r in records if r["message"] == "END: rollup_days")
    assert end["extra"]["days"] == 3
    assert end["extra"]["computed"] == 3


def test_configure_loguru_writes_component_files(tmp_path):
    configure_loguru(log_dir=tmp_path, level="DEBUG", enable_console=False)
    try:
        get_logger("correction").info("Corrected aggregate")
        get_logger("storage").info("Stored readings")
        logger.complete()
    finally:
        logger.remove()
        logger.add(sys.stderr, level="INFO")

    lines = (tmp_path / "correction.jsonl").read_text().splitlines()
    entries = [json.loads(line) for line in lines]
    assert [e["record"]["message"] for e in entries] == ["Corrected aggregate"]
    assert (tmp_path / "meterledger.jsonl").exists()
