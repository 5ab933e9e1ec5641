"""Runtime settings for the allocation engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .environment import parse_env_bool, parse_env_int, parse_env_optional_int, parse_env_str

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class EngineSettings:
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None
    progress_interval: int = 50
    random_seed: int | None = None
    max_concurrent_jobs: int = 2

    @classmethod
    def from_env(cls, *, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        level = parse_env_str("ALLOCATOR_LOG_LEVEL", "INFO", environ=environ).upper()
        if level not in _LOG_LEVELS:
            level = "INFO"

        seed = parse_env_optional_int("ALLOCATOR_RANDOM_SEED", environ=environ)
        if seed is not None and seed < 0:
            seed = None

        return cls(
            log_level=level,
            log_json=parse_env_bool("ALLOCATOR_LOG_JSON", False, environ=environ),
            log_file=parse_env_str("ALLOCATOR_LOG_FILE", "", environ=environ) or None,
            progress_interval=parse_env_int(
                "ALLOCATOR_PROGRESS_INTERVAL",
                50,
                1,
                10_000,
                environ=environ,
            ),
            random_seed=seed,
            max_concurrent_jobs=parse_env_int(
                "ALLOCATOR_MAX_CONCURRENT_JOBS",
                2,
                1,
                32,
                environ=environ,
            ),
        )


def load_engine_settings(*, environ: Mapping[str, str] | None = None) -> EngineSettings:
    return EngineSettings.from_env(environ=environ)
