"""Structured logging for optimization runs."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from strategy_allocator.settings import EngineSettings

# LogRecord attributes copied into JSON lines when a caller passes them via `extra`.
CONTEXT_FIELDS = ("job_id", "block_name", "phase")


class JsonLogFormatter(logging.Formatter):
    """Serialize log records as line-delimited JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def build_logging_config(
    level: str = "INFO",
    *,
    json_format: bool = False,
    log_file: str | None = None,
) -> dict[str, Any]:
    formatter = "json" if json_format else "text"
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": formatter,
        }
    }

    root_handlers = ["console"]
    if log_file:
        file_path = Path(log_file).expanduser().resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(file_path),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": formatter,
            "encoding": "utf-8",
        }
        root_handlers.append("file")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": "strategy_allocator.observability.logging.JsonLogFormatter"},
            "text": {
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            },
        },
        "handlers": handlers,
        "root": {"level": level.upper(), "handlers": root_handlers},
    }


def configure_logging(
    level: str = "INFO",
    *,
    json_format: bool = False,
    log_file: str | None = None,
) -> None:
    """Install console (and optional rotating file) handlers on the root logger."""
    logging.config.dictConfig(build_logging_config(level, json_format=json_format, log_file=log_file))


def configure_logging_from_settings(settings: EngineSettings | None = None) -> EngineSettings:
    settings = settings or EngineSettings.from_env()
    configure_logging(settings.log_level, json_format=settings.log_json, log_file=settings.log_file)
    return settings
