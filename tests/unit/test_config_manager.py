"""Unit tests for the hierarchical optimization config."""

from __future__ import annotations

import pytest

from strategy_allocator.common.config_manager import (
    ConfigError,
    HierarchicalConfig,
    deep_merge,
    load_hierarchical_config,
    normalize_keys,
    parse_monte_carlo_params,
)
from strategy_allocator.errors import AllocationInputError


class TestHierarchicalConfig:
    """Tests for HierarchicalConfig parsing."""

    def test_defaults(self) -> None:
        config = HierarchicalConfig()
        assert config.level1.objective == "max-sharpe"
        assert config.level1.num_simulations == 1000
        assert config.level1.risk_free_rate == 2.0
        assert config.level1.constraints.fully_invested
        assert config.level2.num_simulations == 2000
        assert config.level2.block_config.date_alignment == "overlapping"
        assert config.level2.block_config.annualization_factor == 252
        assert config.random_seed is None

    def test_from_empty_dict_matches_defaults(self) -> None:
        assert HierarchicalConfig.from_dict({}) == HierarchicalConfig()
        assert HierarchicalConfig.from_dict(None) == HierarchicalConfig()

    def test_camel_case_payload(self) -> None:
        config = HierarchicalConfig.from_dict(
            {
                "level1": {
                    "objective": "min-volatility",
                    "numSimulations": 300,
                    "constraints": {"minWeight": 0.1, "maxWeight": 0.8},
                    "riskFreeRate": 4.5,
                },
                "level2": {"blockConfig": {"dateAlignment": "zero-padding"}, "numSimulations": 500},
                "randomSeed": 17,
            }
        )
        assert config.level1.objective == "min-volatility"
        assert config.level1.num_simulations == 300
        assert config.level1.constraints.min_weight == 0.1
        assert config.level1.constraints.max_weight == 0.8
        assert config.level1.risk_free_rate == 4.5
        assert config.level2.block_config.date_alignment == "zero-padding"
        assert config.level2.num_simulations == 500
        assert config.random_seed == 17

    def test_snake_case_payload(self) -> None:
        config = HierarchicalConfig.from_dict({"level2": {"block_config": {"risk_free_rate": 0.0}}})
        assert config.level2.block_config.risk_free_rate == 0.0

    def test_block_config_constraints(self) -> None:
        config = HierarchicalConfig.from_dict(
            {"level2": {"blockConfig": {"constraints": {"minWeight": 0.2, "maxWeight": 0.8}}}}
        )
        assert config.level2.constraints.min_weight == 0.2
        assert config.level2.constraints.max_weight == 0.8
        assert config.level2.constraints.fully_invested

    def test_round_trip_through_to_dict(self) -> None:
        config = HierarchicalConfig.from_dict({"level1": {"numSimulations": 42}, "randomSeed": 3})
        assert HierarchicalConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize(
        "payload",
        [
            {"level1": {"numSimulation": 10}},
            {"level3": {}},
            {"level2": {"blockConfig": {"alignment": "overlapping"}}},
            {"level1": {"constraints": {"maxWeights": 0.5}}},
        ],
    )
    def test_unknown_keys_rejected(self, payload) -> None:
        with pytest.raises(ConfigError, match="Unknown keys"):
            HierarchicalConfig.from_dict(payload)

    @pytest.mark.parametrize(
        "payload",
        [
            {"level1": {"objective": "max-sortino"}},
            {"level1": {"numSimulations": 0}},
            {"level1": {"numSimulations": 2.5}},
            {"level2": {"blockConfig": {"dateAlignment": "nearest"}}},
            {"level1": {"constraints": {"minWeight": 0.9, "maxWeight": 0.1}}},
            {"randomSeed": -1},
            {"level1": "fast"},
        ],
    )
    def test_invalid_values_rejected(self, payload) -> None:
        with pytest.raises(ConfigError):
            HierarchicalConfig.from_dict(payload)

    def test_config_error_is_input_error(self) -> None:
        assert issubclass(ConfigError, AllocationInputError)
        assert ConfigError.code == "CONFIG_ERROR"


class TestLoading:
    """Tests for YAML loading."""

    def test_load_defaults_without_path(self) -> None:
        assert load_hierarchical_config() == HierarchicalConfig()

    def test_yaml_is_merged_over_defaults(self, tmp_path) -> None:
        path = tmp_path / "allocator.yaml"
        path.write_text(
            "level1:\n"
            "  num_simulations: 250\n"
            "level2:\n"
            "  block_config:\n"
            "    date_alignment: zero-padding\n"
            "random_seed: 9\n",
            encoding="utf-8",
        )
        config = load_hierarchical_config(path)
        assert config.level1.num_simulations == 250
        assert config.level1.objective == "max-sharpe"
        assert config.level2.block_config.date_alignment == "zero-padding"
        assert config.level2.num_simulations == 2000
        assert config.random_seed == 9

    def test_empty_yaml(self, tmp_path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_hierarchical_config(path) == HierarchicalConfig()

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_hierarchical_config(tmp_path / "missing.yaml")

    def test_non_mapping_root(self, tmp_path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_hierarchical_config(path)

    def test_malformed_yaml(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("level1: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="parse"):
            load_hierarchical_config(path)


class TestHelpers:
    """Tests for dict helpers and projection params."""

    def test_deep_merge_does_not_mutate(self) -> None:
        base = {"a": {"b": 1, "c": 2}}
        merged = deep_merge(base, {"a": {"b": 5}})
        assert merged == {"a": {"b": 5, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}

    def test_normalize_keys(self) -> None:
        assert normalize_keys({"blockConfig": {"dateAlignment": "x"}, "level1": [{"minWeight": 1}]}) == {
            "block_config": {"date_alignment": "x"},
            "level1": [{"min_weight": 1}],
        }

    def test_monte_carlo_params(self) -> None:
        params = parse_monte_carlo_params({"numSimulations": 10, "resampleMethod": "trades", "randomSeed": 4})
        assert params.num_simulations == 10
        assert params.resample_method == "trades"
        assert params.random_seed == 4
        assert params.initial_capital == 100_000.0

    def test_monte_carlo_params_invalid(self) -> None:
        with pytest.raises(ConfigError):
            parse_monte_carlo_params({"resampleMethod": "hourly"})
        with pytest.raises(ConfigError):
            parse_monte_carlo_params({"paths": 10})

    def test_monte_carlo_worst_case_params(self) -> None:
        params = parse_monte_carlo_params(
            {
                "resampleMethod": "percentage",
                "historicalInitialCapital": 50_000,
                "worstCaseEnabled": True,
                "worstCasePercentage": 10,
                "worstCaseMode": "guarantee",
                "normalizeTo1Lot": True,
            }
        )
        assert params.capital_base == 50_000.0
        assert params.worst_case_enabled
        assert params.worst_case_percentage == 10.0
        assert params.worst_case_mode == "guarantee"
        assert params.normalize_to_1_lot
        assert parse_monte_carlo_params({"normalize_to_1_lot": True}).normalize_to_1_lot

    def test_monte_carlo_worst_case_invalid(self) -> None:
        with pytest.raises(ConfigError):
            parse_monte_carlo_params({"worstCaseEnabled": "yes"})
        with pytest.raises(ConfigError):
            parse_monte_carlo_params({"worstCasePercentage": 50})
        with pytest.raises(ConfigError):
            parse_monte_carlo_params({"worstCaseMode": "sometimes"})
