"""Unit tests for engine settings and structured logging."""

from __future__ import annotations

import json
import logging

from strategy_allocator.observability import JsonLogFormatter, build_logging_config
from strategy_allocator.settings import EngineSettings, parse_env_bool, parse_env_int


class TestEnvironmentParsing:
    """Tests for environment helpers."""

    def test_bool_values(self) -> None:
        env = {"A": "yes", "B": "off", "C": "maybe"}
        assert parse_env_bool("A", environ=env) is True
        assert parse_env_bool("B", True, environ=env) is False
        assert parse_env_bool("C", True, environ=env) is True
        assert parse_env_bool("MISSING", environ=env) is False

    def test_int_is_clamped(self) -> None:
        env = {"LOW": "-5", "HIGH": "999", "BAD": "ten"}
        assert parse_env_int("LOW", 10, 1, 100, environ=env) == 1
        assert parse_env_int("HIGH", 10, 1, 100, environ=env) == 100
        assert parse_env_int("BAD", 10, 1, 100, environ=env) == 10


class TestEngineSettings:
    """Tests for EngineSettings.from_env."""

    def test_defaults(self) -> None:
        settings = EngineSettings.from_env(environ={})
        assert settings == EngineSettings()
        assert settings.progress_interval == 50

    def test_overrides(self) -> None:
        settings = EngineSettings.from_env(
            environ={
                "ALLOCATOR_LOG_LEVEL": "debug",
                "ALLOCATOR_LOG_JSON": "true",
                "ALLOCATOR_LOG_FILE": "/tmp/allocator.log",
                "ALLOCATOR_PROGRESS_INTERVAL": "0",
                "ALLOCATOR_RANDOM_SEED": "42",
                "ALLOCATOR_MAX_CONCURRENT_JOBS": "100",
            }
        )
        assert settings.log_level == "DEBUG"
        assert settings.log_json is True
        assert settings.log_file == "/tmp/allocator.log"
        assert settings.progress_interval == 1
        assert settings.random_seed == 42
        assert settings.max_concurrent_jobs == 32

    def test_invalid_values_fall_back(self) -> None:
        settings = EngineSettings.from_env(
            environ={"ALLOCATOR_LOG_LEVEL": "chatty", "ALLOCATOR_RANDOM_SEED": "-3"}
        )
        assert settings.log_level == "INFO"
        assert settings.random_seed is None


class TestLogging:
    """Tests for the JSON formatter and logging config."""

    def test_json_formatter_includes_job_context(self) -> None:
        record = logging.LogRecord("strategy_allocator.jobs", logging.INFO, __file__, 1, "Job %s", ("done",), None)
        record.job_id = "abc"
        payload = json.loads(JsonLogFormatter().format(record))
        assert payload["message"] == "Job done"
        assert payload["level"] == "INFO"
        assert payload["job_id"] == "abc"
        assert "phase" not in payload

    def test_config_adds_rotating_file_handler(self, tmp_path) -> None:
        config = build_logging_config("debug", json_format=True, log_file=str(tmp_path / "logs" / "run.log"))
        assert config["root"]["level"] == "DEBUG"
        assert config["root"]["handlers"] == ["console", "file"]
        assert config["handlers"]["file"]["class"] == "logging.handlers.RotatingFileHandler"
        assert config["handlers"]["console"]["formatter"] == "json"
        assert (tmp_path / "logs").is_dir()

    def test_text_config_without_file(self) -> None:
        config = build_logging_config()
        assert config["root"]["handlers"] == ["console"]
        assert config["handlers"]["console"]["formatter"] == "text"
