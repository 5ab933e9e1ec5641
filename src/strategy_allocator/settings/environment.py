"""Environment variable parsing helpers."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "y"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", "n"})


def _source(environ: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def parse_env_str(name: str, default: str = "", *, environ: Mapping[str, str] | None = None) -> str:
    value = _source(environ).get(name)
    if value is None:
        return default
    return str(value).strip()


def parse_env_bool(
    name: str,
    default: bool = False,
    *,
    environ: Mapping[str, str] | None = None,
) -> bool:
    raw = parse_env_str(name, "", environ=environ).lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    if raw:
        logger.warning("Ignoring unrecognised boolean %s=%r", name, raw)
    return default


def parse_env_optional_int(name: str, *, environ: Mapping[str, str] | None = None) -> int | None:
    raw = parse_env_str(name, "", environ=environ)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def parse_env_int(
    name: str,
    default: int,
    minimum: int,
    maximum: int,
    *,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Integer from the environment, clamped to [minimum, maximum]."""
    parsed = parse_env_optional_int(name, environ=environ)
    if parsed is None:
        return default
    return max(minimum, min(parsed, maximum))
