"""Engine configuration.

Loads settings from a .env file, the process environment, or a YAML file and
provides typed access to them. Targets and excluded (maintenance/holiday)
dates are injected here instead of being hardcoded in the rollup code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any

import yaml

__all__ = [
    "ALLOWED_BUCKET_SIZES",
    "ConfigError",
    "EngineSettings",
    "generate_example_env",
    "get_settings",
    "load_env_file",
    "load_settings",
    "parse_date_set",
]

ALLOWED_BUCKET_SIZES = (15, 30)


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""

    pass


@dataclass(frozen=True)
class EngineSettings:
    """Settings shared by all engine components.

    Attributes
    ----------
    timezone_offset_hours : int
        Fixed offset of plant local time from UTC
    daily_target_tonnes : float
        Plan for one production day
    shift_target_tonnes : float
        Plan for one 12h shift
    hourly_target_tonnes : float
        Plan speed; drives the Normal/Warning/Danger status
    gap_threshold_minutes : float
        Silence longer than this is a Gap
    large_gap_threshold_minutes : float
        Gaps longer than this are excluded from totals
    reset_epsilon_tonnes : float
        Counter values below this count as "restarted near zero"
    reset_tolerance_tonnes : float
        Negative deltas within this tolerance are jitter, not resets
    spike_threshold_tonnes : float
        Single-interval delta above this is a Spike (20 for audit, 100 for dashboards)
    include_spikes : bool
        Whether Spike deltas count towards production totals
    bucket_size_minutes : int
        Chart bucket size, 15 or 30
    excluded_dates : frozenset[date]
        Maintenance/holiday production days left out of progress averaging
    correction_anomaly_threshold : float
        Shift aggregates with a larger difference are candidates for correction
    max_rate_tonnes_per_hour : float
        Instantaneous rates above this are reported as anomalies
    max_workers : int
        Thread pool size for multi-day fan-out
    log_level : str
        Logging level
    log_dir : Path | None
        Directory for JSONL logs (console only when unset)
    """

    timezone_offset_hours: int = 5
    daily_target_tonnes: float = 1200.0
    shift_target_tonnes: float = 600.0
    hourly_target_tonnes: float = 50.0
    gap_threshold_minutes: float = 15.0
    large_gap_threshold_minutes: float = 60.0
    reset_epsilon_tonnes: float = 10.0
    reset_tolerance_tonnes: float = 10.0
    spike_threshold_tonnes: float = 100.0
    include_spikes: bool = False
    bucket_size_minutes: int = 30
    excluded_dates: frozenset[date] = field(default_factory=frozenset)
    correction_anomaly_threshold: float = 10000.0
    max_rate_tonnes_per_hour: float = 200.0
    max_workers: int = 4
    log_level: str = "INFO"
    log_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate settings after initialization."""
        if not isinstance(self.excluded_dates, frozenset):
            object.__setattr__(self, "excluded_dates", frozenset(self.excluded_dates))
        if self.log_dir is not None and isinstance(self.log_dir, str):
            object.__setattr__(self, "log_dir", Path(self.log_dir))

        if not -12 <= self.timezone_offset_hours <= 14:
            raise ConfigError(
                f"timezone_offset_hours must be within [-12, 14], got {self.timezone_offset_hours}"
            )
        if self.bucket_size_minutes not in ALLOWED_BUCKET_SIZES:
            raise ConfigError(
                f"bucket_size_minutes must be one of {ALLOWED_BUCKET_SIZES}, "
                f"got {self.bucket_size_minutes}"
            )
        for name in ("daily_target_tonnes", "shift_target_tonnes", "hourly_target_tonnes"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.large_gap_threshold_minutes < self.gap_threshold_minutes:
            raise ConfigError(
                "large_gap_threshold_minutes must not be smaller than gap_threshold_minutes"
            )
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

    def is_excluded(self, day: date) -> bool:
        """Whether a production day is a maintenance/holiday day."""
        return day in self.excluded_dates

    def with_overrides(self, **overrides: Any) -> EngineSettings:
        """Copy with some fields replaced (re-validated)."""
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, env_file: Path | str | None = None) -> EngineSettings:
        """Load settings from environment.

        Loads the .env file first if present; every variable is optional.

        Parameters
        ----------
        env_file
            Path to .env file (default: .env in current directory)

        Returns
        -------
        EngineSettings
            Loaded settings

        Raises
        ------
        ConfigError
            If a value cannot be parsed or fails validation
        """
        if env_file is None:
            env_file = Path(".env")
        if isinstance(env_file, str):
            env_file = Path(env_file)

        if env_file.exists():
            load_env_file(env_file)

        env = os.environ
        try:
            return cls(
                timezone_offset_hours=int(env.get("METER_TZ_OFFSET_HOURS", "5")),
                daily_target_tonnes=float(env.get("METER_DAILY_TARGET", "1200")),
                shift_target_tonnes=float(env.get("METER_SHIFT_TARGET", "600")),
                hourly_target_tonnes=float(env.get("METER_HOURLY_TARGET", "50")),
                gap_threshold_minutes=float(env.get("METER_GAP_THRESHOLD_MINUTES", "15")),
                large_gap_threshold_minutes=float(env.get("METER_LARGE_GAP_THRESHOLD_MINUTES", "60")),
                reset_epsilon_tonnes=float(env.get("METER_RESET_EPSILON", "10")),
                reset_tolerance_tonnes=float(env.get("METER_RESET_TOLERANCE", "10")),
                spike_threshold_tonnes=float(env.get("METER_SPIKE_THRESHOLD", "100")),
                include_spikes=env.get("METER_INCLUDE_SPIKES", "false").lower() == "true",
                bucket_size_minutes=int(env.get("METER_BUCKET_SIZE_MINUTES", "30")),
                excluded_dates=parse_date_set(env.get("METER_EXCLUDED_DATES", "")),
                correction_anomaly_threshold=float(env.get("METER_CORRECTION_THRESHOLD", "10000")),
                max_rate_tonnes_per_hour=float(env.get("METER_MAX_RATE", "200")),
                max_workers=int(env.get("METER_MAX_WORKERS", "4")),
                log_level=env.get("METER_LOG_LEVEL", "INFO"),
                log_dir=Path(env["METER_LOG_DIR"]) if "METER_LOG_DIR" in env else None,
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    @classmethod
    def from_yaml(cls, path: Path | str) -> EngineSettings:
        """Load settings from a YAML mapping of field names to values.

        Unknown keys are rejected so that typos do not silently fall back to
        defaults.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")

        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown settings in {path}: {', '.join(unknown)}")

        if "excluded_dates" in data:
            data["excluded_dates"] = parse_date_set(data["excluded_dates"] or [])

        try:
            return cls(**data)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def load_env_file(env_file: Path) -> None:
    """Load environment variables from .env file.

    Parameters
    ----------
    env_file
        Path to .env file
    """
    with open(env_file) as f:
        for line in f:
            line = line.strip()

            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue

            if "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()

                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                os.environ[key] = value


def parse_date_set(value: str | list[Any] | tuple[Any, ...] | set[Any] | frozenset[Any]) -> frozenset[date]:
    """Parse ISO dates from a comma-separated string or a sequence.

    Parameters
    ----------
    value
        "2025-01-01,2025-03-08" or an iterable of ``date``/ISO strings

    Returns
    -------
    frozenset[date]
        Parsed dates

    Raises
    ------
    ValueError
        If an entry is not an ISO date
    """
    if isinstance(value, str):
        items: list[Any] = [x.strip() for x in value.split(",") if x.strip()]
    else:
        items = list(value)

    dates = set()
    for item in items:
        if isinstance(item, date):
            dates.add(item)
        else:
            dates.add(date.fromisoformat(str(item)))
    return frozenset(dates)


# Global settings instance
_settings: EngineSettings | None = None


def load_settings(env_file: Path | str | None = None) -> EngineSettings:
    """Load settings from environment and keep them as the process default."""
    global _settings
    _settings = EngineSettings.from_env(env_file)
    return _settings


def get_settings() -> EngineSettings:
    """Get current settings.

    Returns defaults when :func:`load_settings` has not been called; every
    engine setting has a sensible default.
    """
    global _settings
    if _settings is None:
        _settings = EngineSettings()
    return _settings


def generate_example_env(output_path: Path | None = None) -> str:
    """Generate example .env file with all settings.

    Parameters
    ----------
    output_path
        Optional path to write .env file

    Returns
    -------
    str
        Example .env contents
    """
    example = """# meterledger configuration
# Copy this to .env and adjust values. Every setting is optional.

# ====================
# Plant calendar
# ====================

# Plant local time offset from UTC in hours (default: 5)
METER_TZ_OFFSET_HOURS=5

# Maintenance/holiday production days, comma-separated ISO dates
# METER_EXCLUDED_DATES=2025-01-01,2025-03-08

# ====================
# Targets (tonnes)
# ====================

METER_DAILY_TARGET=1200
METER_SHIFT_TARGET=600
METER_HOURLY_TARGET=50

# ====================
# Delta classification
# ====================

# Silence longer than this is a gap (minutes)
METER_GAP_THRESHOLD_MINUTES=15

# Gaps longer than this are excluded from totals (minutes)
METER_LARGE_GAP_THRESHOLD_MINUTES=60

# Counter values below this count as a restart near zero (tonnes)
METER_RESET_EPSILON=10

# Negative deltas within this tolerance are not resets (tonnes)
METER_RESET_TOLERANCE=10

# Single-interval spike threshold: 20 for audit reports, 100 for dashboards
METER_SPIKE_THRESHOLD=100
METER_INCLUDE_SPIKES=false

# Chart bucket size in minutes (15 or 30)
METER_BUCKET_SIZE_MINUTES=30

# Instantaneous rates above this are reported as anomalies (t/h)
METER_MAX_RATE=200

# Worker threads for multi-day rollups
METER_MAX_WORKERS=4

# ====================
# Corrections
# ====================

# Stored shift differences above this are flagged for correction
METER_CORRECTION_THRESHOLD=10000

# ====================
# Logging
# ====================

# Options: DEBUG, INFO, WARNING, ERROR, CRITICAL
METER_LOG_LEVEL=INFO

# JSONL log directory (optional, logs to console if not set)
# METER_LOG_DIR=logs
"""

    if output_path:
        output_path.write_text(example)

    return example
