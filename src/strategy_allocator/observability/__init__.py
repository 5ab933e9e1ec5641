"""Observability helpers for logging."""

from .logging import JsonLogFormatter, build_logging_config, configure_logging, configure_logging_from_settings

__all__ = [
    "JsonLogFormatter",
    "build_logging_config",
    "configure_logging",
    "configure_logging_from_settings",
]
