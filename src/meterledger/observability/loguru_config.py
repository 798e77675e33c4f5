"""Loguru configuration with timing for engine runs.

This module provides centralized loguru configuration with:
- Colored console output
- Structured JSON logging with rotation and retention
- Component-specific log files (rollup, forecast, correction, storage)
- A context manager for timing operations
"""

from __future__ import annotations

import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Generator

__all__ = [
    "COMPONENTS",
    "configure_loguru",
    "get_logger",
    "timing_context",
]

COMPONENTS = ("rollup", "forecast", "correction", "storage")


def configure_loguru(
    *,
    log_dir: Path | None = None,
    level: str = "INFO",
    rotation: str = "100 MB",
    retention: str = "10 days",
    compression: str = "zip",
    enable_console: bool = True,
) -> None:
    """Configure loguru sinks.

    Parameters
    ----------
    log_dir
        Directory for JSONL log files; console only when None
    level
        Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    rotation
        Log rotation policy (e.g., "100 MB", "1 day")
    retention
        Log retention policy (e.g., "10 days", "1 week")
    compression
        Compression for rotated logs (zip, gz, bz2, xz)
    enable_console
        Enable console output

    Example
    -------
    >>> from meterledger.observability import configure_loguru
    >>> configure_loguru(log_dir=Path("logs"), level="DEBUG")
    """
    logger.remove()

    if enable_console:
        logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[component]}</cyan> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>",
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_dir / "meterledger.jsonl",
            format="{message}",
            level=level,
            rotation=rotation,
            retention=retention,
            compression=compression,
            serialize=True,
            backtrace=True,
            diagnose=False,
            enqueue=True,
        )

        for component in COMPONENTS:
            logger.add(
                log_dir / f"{component}.jsonl",
                format="{message}",
                level=level,
                rotation=rotation,
                retention=retention,
                compression=compression,
                serialize=True,
                enqueue=True,
                filter=lambda record, comp=component: record["extra"].get("component") == comp,
            )

    # Records emitted through the bare logger still render {extra[component]}
    logger.configure(extra={"component": "meterledger"})
    logger.bind(component="meterledger").info(
        "Loguru configured", log_dir=str(log_dir) if log_dir else None, level=level
    )


def get_logger(component: str = "meterledger") -> Any:
    """Get logger instance bound to specific component.

    Parameters
    ----------
    component
        Component name (rollup, forecast, correction, storage)

    Returns
    -------
    Logger
        Loguru logger bound to component
    """
    return logger.bind(component=component)


@contextmanager
def timing_context(
    operation: str,
    *,
    component: str = "meterledger",
    **metadata: Any,
) -> Generator[dict[str, Any], None, None]:
    """Context manager for timing operations.

    Parameters
    ----------
    operation
        Name of the operation being timed
    component
        Component name for filtering logs
    **metadata
        Additional metadata to log

    Yields
    ------
    dict
        Context dictionary that can be updated with additional data

    Example
    -------
    >>> with timing_context("rollup_days", component="rollup", days=31) as ctx:
    ...     results = engine.rollup_days(groups)
    ...     ctx["computed"] = len(results)
    """
    start_ns = time.perf_counter_ns()
    context: dict[str, Any] = {"operation": operation, **metadata}
    bound = logger.bind(component=component, timing=True, operation=operation)

    bound.debug(f"START: {operation}", phase="start", **metadata)
    try:
        yield context
    finally:
        duration_ns = time.perf_counter_ns() - start_ns
        bound.info(
            f"END: {operation}",
            phase="end",
            duration_ms=duration_ns / 1_000_000,
            **{k: v for k, v in context.items() if k != "operation"},
        )
