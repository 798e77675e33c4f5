"""Configuration for the production accounting engine."""

from .settings import (
    ALLOWED_BUCKET_SIZES,
    ConfigError,
    EngineSettings,
    generate_example_env,
    get_settings,
    load_settings,
)

__all__ = [
    "ALLOWED_BUCKET_SIZES",
    "ConfigError",
    "EngineSettings",
    "generate_example_env",
    "get_settings",
    "load_settings",
]
