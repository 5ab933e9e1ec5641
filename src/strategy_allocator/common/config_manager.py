"""
Configuration Manager - Strategy Allocator

Builds the hierarchical optimization config from plain dictionaries (camelCase
request payloads or snake_case YAML) and from YAML files merged over the
defaults.
"""

from __future__ import annotations

import logging
import re
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from strategy_allocator.analytics.frontier import (
    DEFAULT_ANNUALIZATION_FACTOR,
    DEFAULT_RISK_FREE_RATE,
    OBJECTIVES,
    Objective,
    PortfolioConstraints,
)
from strategy_allocator.analytics.projection import MonteCarloParams
from strategy_allocator.analytics.returns import DATE_ALIGNMENT_MODES, DateAlignmentMode
from strategy_allocator.errors import AllocationInputError

logger = logging.getLogger(__name__)

ConfigDict = dict[str, Any]

DEFAULT_HIERARCHICAL_OPTIONS: ConfigDict = {
    "level1": {
        "objective": "max-sharpe",
        "num_simulations": 1000,
        "constraints": {
            "min_weight": 0.0,
            "max_weight": 1.0,
            "fully_invested": True,
            "allow_leverage": False,
        },
        "risk_free_rate": DEFAULT_RISK_FREE_RATE,
        "annualization_factor": DEFAULT_ANNUALIZATION_FACTOR,
    },
    "level2": {
        "block_config": {
            "date_alignment": "overlapping",
            "risk_free_rate": DEFAULT_RISK_FREE_RATE,
            "annualization_factor": DEFAULT_ANNUALIZATION_FACTOR,
        },
        "num_simulations": 2000,
        "constraints": {
            "min_weight": 0.0,
            "max_weight": 1.0,
            "fully_invested": True,
            "allow_leverage": False,
        },
    },
    "random_seed": None,
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class ConfigError(AllocationInputError):
    """Raised when an optimization configuration is invalid."""

    code = "CONFIG_ERROR"


# ---------------------------------------------------------------------------
# Config Objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Level1Config:
    objective: Objective = "max-sharpe"
    num_simulations: int = 1000
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE
    annualization_factor: int = DEFAULT_ANNUALIZATION_FACTOR

    def to_dict(self) -> ConfigDict:
        return {
            "objective": self.objective,
            "numSimulations": self.num_simulations,
            "constraints": self.constraints.to_dict(),
            "riskFreeRate": self.risk_free_rate,
            "annualizationFactor": self.annualization_factor,
        }


@dataclass(frozen=True)
class BlockOptimizationConfig:
    date_alignment: DateAlignmentMode = "overlapping"
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE
    annualization_factor: int = DEFAULT_ANNUALIZATION_FACTOR

    def to_dict(self) -> ConfigDict:
        return {
            "dateAlignment": self.date_alignment,
            "riskFreeRate": self.risk_free_rate,
            "annualizationFactor": self.annualization_factor,
        }


@dataclass(frozen=True)
class Level2Config:
    block_config: BlockOptimizationConfig = field(default_factory=BlockOptimizationConfig)
    num_simulations: int = 2000
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)

    def to_dict(self) -> ConfigDict:
        return {
            "blockConfig": self.block_config.to_dict(),
            "numSimulations": self.num_simulations,
            "constraints": self.constraints.to_dict(),
        }


@dataclass(frozen=True)
class HierarchicalConfig:
    level1: Level1Config = field(default_factory=Level1Config)
    level2: Level2Config = field(default_factory=Level2Config)
    random_seed: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> HierarchicalConfig:
        """Build from camelCase or snake_case keys merged over the defaults."""
        overrides = normalize_keys(dict(data or {}))
        merged = deep_merge(DEFAULT_HIERARCHICAL_OPTIONS, overrides)
        return _build_hierarchical_config(merged)

    def to_dict(self) -> ConfigDict:
        return {
            "level1": self.level1.to_dict(),
            "level2": self.level2.to_dict(),
            "randomSeed": self.random_seed,
        }


# ---------------------------------------------------------------------------
# Dict helpers
# ---------------------------------------------------------------------------


def deep_merge(base: ConfigDict, override: Mapping[str, Any]) -> ConfigDict:
    result = deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)
    return result


def to_snake_case(key: str) -> str:
    if "_" in key:
        return key.lower()
    # level1/level2 keep their digit
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_keys(data: Any) -> Any:
    """Recursively convert mapping keys to snake_case."""
    if isinstance(data, Mapping):
        return {to_snake_case(str(k)): normalize_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [normalize_keys(v) for v in data]
    return data


def _check_keys(section: str, data: Mapping[str, Any], allowed: Mapping[str, Any]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(unknown)}")


def _as_mapping(section: str, value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"Section '{section}' must be a mapping, got {type(value).__name__}")
    return value


def _positive_int(section: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{section}' must be a positive integer, got {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{section}' must be a positive integer, got {value!r}") from exc
    if parsed <= 0 or parsed != value:
        raise ConfigError(f"'{section}' must be a positive integer, got {value!r}")
    return parsed


def _number(section: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"'{section}' must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{section}' must be a number, got {value!r}") from exc


def _flag(section: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"'{section}' must be true or false, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Section builders
# ---------------------------------------------------------------------------


def parse_constraints(section: str, data: Any) -> PortfolioConstraints:
    data = _as_mapping(section, data)
    defaults = DEFAULT_HIERARCHICAL_OPTIONS["level1"]["constraints"]
    _check_keys(section, data, defaults)
    values = {**defaults, **data}
    try:
        return PortfolioConstraints(
            min_weight=_number(f"{section}.min_weight", values["min_weight"]),
            max_weight=_number(f"{section}.max_weight", values["max_weight"]),
            fully_invested=bool(values["fully_invested"]),
            allow_leverage=bool(values["allow_leverage"]),
        )
    except ConfigError:
        raise
    except AllocationInputError as exc:
        raise ConfigError(f"Invalid '{section}': {exc}", user_message=exc.user_message) from exc


def _build_level1(data: Any) -> Level1Config:
    data = _as_mapping("level1", data)
    _check_keys("level1", data, DEFAULT_HIERARCHICAL_OPTIONS["level1"])
    objective = data["objective"]
    if objective not in OBJECTIVES:
        raise ConfigError(f"'level1.objective' must be one of {', '.join(OBJECTIVES)}, got {objective!r}")
    return Level1Config(
        objective=objective,
        num_simulations=_positive_int("level1.num_simulations", data["num_simulations"]),
        constraints=parse_constraints("level1.constraints", data["constraints"]),
        risk_free_rate=_number("level1.risk_free_rate", data["risk_free_rate"]),
        annualization_factor=_positive_int("level1.annualization_factor", data["annualization_factor"]),
    )


def _build_level2(data: Any) -> Level2Config:
    data = _as_mapping("level2", data)
    defaults = DEFAULT_HIERARCHICAL_OPTIONS["level2"]
    _check_keys("level2", data, defaults)
    block = _as_mapping("level2.block_config", data["block_config"])
    # request payloads may nest the cross-block constraints under blockConfig
    _check_keys("level2.block_config", block, {**defaults["block_config"], "constraints": None})
    constraints = _as_mapping("level2.constraints", data["constraints"])
    if "constraints" in block:
        constraints = deep_merge(
            constraints, _as_mapping("level2.block_config.constraints", block["constraints"])
        )
    alignment = block["date_alignment"]
    if alignment not in DATE_ALIGNMENT_MODES:
        raise ConfigError(
            f"'level2.block_config.date_alignment' must be one of {', '.join(DATE_ALIGNMENT_MODES)}, "
            f"got {alignment!r}"
        )
    return Level2Config(
        block_config=BlockOptimizationConfig(
            date_alignment=alignment,
            risk_free_rate=_number("level2.block_config.risk_free_rate", block["risk_free_rate"]),
            annualization_factor=_positive_int(
                "level2.block_config.annualization_factor", block["annualization_factor"]
            ),
        ),
        num_simulations=_positive_int("level2.num_simulations", data["num_simulations"]),
        constraints=parse_constraints("level2.constraints", constraints),
    )


def _build_hierarchical_config(merged: ConfigDict) -> HierarchicalConfig:
    _check_keys("config", merged, DEFAULT_HIERARCHICAL_OPTIONS)
    seed = merged.get("random_seed")
    if seed is not None:
        if isinstance(seed, bool) or not isinstance(seed, int) or seed < 0:
            raise ConfigError(f"'random_seed' must be a non-negative integer, got {seed!r}")
    return HierarchicalConfig(
        level1=_build_level1(merged["level1"]),
        level2=_build_level2(merged["level2"]),
        random_seed=seed,
    )


def parse_monte_carlo_params(data: Mapping[str, Any] | None) -> MonteCarloParams:
    """Projection parameters from camelCase or snake_case keys."""
    values = normalize_keys(dict(data or {}))
    # camelCase normalizeTo1Lot loses the digit boundary
    if "normalize_to1_lot" in values:
        values["normalize_to_1_lot"] = values.pop("normalize_to1_lot")
    defaults = MonteCarloParams()
    allowed = {
        "num_simulations": defaults.num_simulations,
        "simulation_length": defaults.simulation_length,
        "resample_method": defaults.resample_method,
        "initial_capital": defaults.initial_capital,
        "trades_per_year": defaults.trades_per_year,
        "random_seed": defaults.random_seed,
        "historical_initial_capital": defaults.historical_initial_capital,
        "worst_case_enabled": defaults.worst_case_enabled,
        "worst_case_percentage": defaults.worst_case_percentage,
        "worst_case_mode": defaults.worst_case_mode,
        "normalize_to_1_lot": defaults.normalize_to_1_lot,
    }
    _check_keys("projection", values, allowed)
    merged = {**allowed, **values}
    try:
        return MonteCarloParams(
            num_simulations=_positive_int("projection.num_simulations", merged["num_simulations"]),
            simulation_length=_positive_int("projection.simulation_length", merged["simulation_length"]),
            resample_method=merged["resample_method"],
            initial_capital=_number("projection.initial_capital", merged["initial_capital"]),
            trades_per_year=_positive_int("projection.trades_per_year", merged["trades_per_year"]),
            random_seed=merged["random_seed"],
            historical_initial_capital=(
                None
                if merged["historical_initial_capital"] is None
                else _number("projection.historical_initial_capital", merged["historical_initial_capital"])
            ),
            worst_case_enabled=_flag("projection.worst_case_enabled", merged["worst_case_enabled"]),
            worst_case_percentage=_number("projection.worst_case_percentage", merged["worst_case_percentage"]),
            worst_case_mode=merged["worst_case_mode"],
            normalize_to_1_lot=_flag("projection.normalize_to_1_lot", merged["normalize_to_1_lot"]),
        )
    except ConfigError:
        raise
    except AllocationInputError as exc:
        raise ConfigError(f"Invalid projection parameters: {exc}") from exc


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config_file(path: str | Path) -> ConfigDict:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML config {config_path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")
    return payload


def load_hierarchical_config(path: str | Path | None = None) -> HierarchicalConfig:
    """Defaults, optionally overridden by a YAML file."""
    if path is None:
        return HierarchicalConfig()
    payload = load_config_file(path)
    logger.info("Loaded optimization config from %s", path)
    return HierarchicalConfig.from_dict(payload)


__all__ = [
    "DEFAULT_HIERARCHICAL_OPTIONS",
    "BlockOptimizationConfig",
    "ConfigError",
    "HierarchicalConfig",
    "Level1Config",
    "Level2Config",
    "deep_merge",
    "load_config_file",
    "load_hierarchical_config",
    "normalize_keys",
    "parse_constraints",
    "parse_monte_carlo_params",
]
