"""Unit tests for strategy_allocator.analytics.projection."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from strategy_allocator.analytics.projection import (
    MonteCarloParams,
    build_portfolio_trades,
    build_worst_case_returns,
    calculate_trade_returns,
    lot_pl,
    run_monte_carlo_projection,
    simulate_return_paths,
)
from strategy_allocator.analytics.returns import ReturnSeries, Trade, align_returns
from strategy_allocator.errors import AllocationCancelledError, AllocationComputationError, AllocationInputError


class TestMonteCarloParams:
    """Tests for parameter validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"num_simulations": 0},
            {"simulation_length": 0},
            {"resample_method": "weekly"},
            {"initial_capital": 0.0},
            {"trades_per_year": 0},
        ],
    )
    def test_invalid(self, kwargs) -> None:
        with pytest.raises(AllocationInputError):
            MonteCarloParams(**kwargs)

    def test_to_dict(self) -> None:
        payload = MonteCarloParams(num_simulations=10, random_seed=3).to_dict()
        assert payload["numSimulations"] == 10
        assert payload["randomSeed"] == 3
        assert payload["resampleMethod"] == "daily"


class TestSimulateReturnPaths:
    """Tests for the bootstrap path simulator."""

    def test_shapes_and_initial_value(self) -> None:
        params = MonteCarloParams(num_simulations=20, simulation_length=15, initial_capital=50_000, random_seed=1)
        result = simulate_return_paths([0.01, -0.005, 0.002], params)
        assert len(result.simulations) == 20
        for sim in result.simulations:
            assert len(sim.path) == 16
            assert sim.path[0] == 50_000
            assert sim.final_value == sim.path[-1]
        assert result.percentiles.steps == list(range(16))

    def test_seed_determinism(self) -> None:
        params = MonteCarloParams(num_simulations=30, simulation_length=25, random_seed=99)
        returns = [0.01, -0.02, 0.015, 0.003, -0.001]
        first = simulate_return_paths(returns, params)
        second = simulate_return_paths(returns, params)
        assert first.to_dict() == second.to_dict()

    def test_percentiles_are_ordered(self) -> None:
        params = MonteCarloParams(num_simulations=200, simulation_length=30, random_seed=5)
        bands = simulate_return_paths([0.02, -0.015, 0.01, -0.03, 0.025], params).percentiles
        for step in range(31):
            assert bands.p5[step] <= bands.p25[step] <= bands.p50[step] <= bands.p75[step] <= bands.p95[step]

    def test_ruin_is_absorbing(self) -> None:
        params = MonteCarloParams(num_simulations=5, simulation_length=4, random_seed=0)
        result = simulate_return_paths([-1.5, -2.0], params)
        for sim in result.simulations:
            assert sim.path[1:] == [0.0, 0.0, 0.0, 0.0]
            assert sim.max_drawdown == pytest.approx(1.0)
            assert sim.total_return == pytest.approx(-1.0)
        assert result.statistics.probability_of_profit == 0.0

    def test_constant_returns(self) -> None:
        params = MonteCarloParams(num_simulations=4, simulation_length=3, initial_capital=100.0, random_seed=2)
        result = simulate_return_paths([0.1, 0.1], params)
        sim = result.simulations[0]
        assert sim.path == pytest.approx([100.0, 110.0, 121.0, 133.1])
        assert sim.max_drawdown == 0.0
        assert sim.sharpe_ratio == 0.0
        assert result.statistics.median_final_value == pytest.approx(133.1)
        assert result.statistics.std_final_value == pytest.approx(0.0, abs=1e-9)
        assert result.statistics.value_at_risk["p5"] == pytest.approx(133.1)
        assert result.statistics.probability_of_profit == 1.0

    def test_requires_two_observations(self) -> None:
        with pytest.raises(AllocationInputError):
            simulate_return_paths([0.01], MonteCarloParams(random_seed=1))

    def test_non_finite_returns_are_a_computation_error(self) -> None:
        with pytest.raises(AllocationComputationError):
            simulate_return_paths([float("nan"), float("inf"), 0.01], MonteCarloParams(random_seed=1))

    def test_progress_and_cancel(self) -> None:
        updates: list[float] = []
        params = MonteCarloParams(num_simulations=60, simulation_length=2, random_seed=1)
        simulate_return_paths([0.01, 0.02], params, progress_callback=updates.append, progress_interval=25)
        assert updates == pytest.approx([25 / 60 * 100, 50 / 60 * 100, 100.0])

        with pytest.raises(AllocationCancelledError):
            simulate_return_paths([0.01, 0.02], params, cancel=lambda: True)


class TestRunMonteCarloProjection:
    """Tests for projecting trade histories."""

    def test_daily_mode(self, dc_trades) -> None:
        params = MonteCarloParams(num_simulations=50, simulation_length=10, random_seed=7)
        result = run_monte_carlo_projection(dc_trades, params)
        assert len(result.simulations) == 50
        assert result.statistics.mean_final_value > 0

    def test_trades_mode_uses_per_trade_returns(self, dc_trades) -> None:
        returns = calculate_trade_returns(dc_trades)
        assert len(returns) == 6
        assert returns[0] == pytest.approx(500 / 100_000)
        assert returns[1] == pytest.approx(-100 / 100_500)

        params = MonteCarloParams(num_simulations=10, simulation_length=5, resample_method="trades", random_seed=7)
        result = run_monte_carlo_projection(dc_trades, params)
        assert len(result.simulations[0].path) == 6

    def test_insufficient_history(self) -> None:
        trades = [Trade(strategy="S", date_opened="2024-01-01", pl=10.0, funds_at_close=1010.0)]
        with pytest.raises(AllocationInputError):
            run_monte_carlo_projection(trades, MonteCarloParams(random_seed=1))

    def test_build_portfolio_trades(self) -> None:
        a = ReturnSeries("A", ("2024-01-01", "2024-01-02"), (0.10, -0.05))
        b = ReturnSeries("B", ("2024-01-01", "2024-01-02"), (0.00, 0.05))
        aligned = align_returns([a, b])
        trades = build_portfolio_trades({"A": 0.5, "B": 0.5}, aligned, initial_capital=1000.0)
        assert [t.pl for t in trades] == pytest.approx([50.0, 0.0])
        assert trades[0].funds_at_close == pytest.approx(1050.0)

        params = MonteCarloParams(num_simulations=5, simulation_length=3, random_seed=1)
        projected = run_monte_carlo_projection(trades, params)
        np.testing.assert_allclose(projected.percentiles.p50[0], 100_000.0)

    def test_percentile_bands_for_full_run(self, trade_builder) -> None:
        rows = [
            (f"2024-01-{day:02d}", pl, 100_000 + 100 * day, 1_000.0, "S")
            for day, pl in zip(range(1, 13), [400, -250, 150, 300, -100, 50, -300, 500, 120, -80, 200, -60])
        ]
        trades = trade_builder(rows)
        params = MonteCarloParams(
            num_simulations=1000,
            simulation_length=100,
            resample_method="trades",
            initial_capital=100_000,
            random_seed=11,
        )
        bands = run_monte_carlo_projection(trades, params).percentiles
        for band in (bands.p5, bands.p25, bands.p50, bands.p75, bands.p95):
            assert len(band) == 101
        for step in range(101):
            assert bands.p5[step] <= bands.p25[step] <= bands.p50[step] <= bands.p75[step] <= bands.p95[step]


def _sized_trades() -> list[Trade]:
    """Three strategies with different sizes and margins, all winners."""
    profiles = {
        "Small": (500.0, 5_000.0, 5),
        "Medium": (2_000.0, 20_000.0, 20),
        "Large": (10_000.0, 100_000.0, 100),
    }
    names = ["Small", "Medium", "Large"]
    balance = 100_000.0
    trades: list[Trade] = []
    for i, day in enumerate(pd.bdate_range("2024-01-01", periods=60)):
        pl, margin, contracts = profiles[names[i % 3]]
        balance += pl
        trades.append(
            Trade(
                strategy=names[i % 3],
                date_opened=day.strftime("%Y-%m-%d"),
                pl=pl,
                funds_at_close=balance,
                margin_req=margin,
                num_contracts=contracts,
            )
        )
    return trades


class TestWorstCaseInjection:
    """Tests for synthetic maximum-loss injection."""

    base = {"num_simulations": 200, "simulation_length": 50, "initial_capital": 100_000, "random_seed": 42}

    def test_disabled_by_default(self) -> None:
        params = MonteCarloParams()
        assert not params.worst_case_enabled
        assert not params.normalize_to_1_lot
        assert params.worst_case_mode == "pool"
        assert params.capital_base == params.initial_capital

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"worst_case_percentage": 0.0},
            {"worst_case_percentage": 25.0},
            {"worst_case_mode": "always"},
            {"historical_initial_capital": -1.0},
        ],
    )
    def test_invalid(self, kwargs) -> None:
        with pytest.raises(AllocationInputError):
            MonteCarloParams(**kwargs)

    def test_losses_per_strategy(self) -> None:
        params = MonteCarloParams(worst_case_enabled=True, worst_case_percentage=5)
        assert build_worst_case_returns(_sized_trades(), params) == pytest.approx([-1.0, -0.2, -0.05])

    def test_losses_per_lot(self) -> None:
        params = MonteCarloParams(worst_case_enabled=True, worst_case_percentage=5, normalize_to_1_lot=True)
        assert build_worst_case_returns(_sized_trades(), params) == pytest.approx([-0.01, -0.01, -0.01])

    def test_loss_count_and_capital_base(self) -> None:
        params = MonteCarloParams(
            worst_case_enabled=True,
            worst_case_percentage=10,
            initial_capital=200_000,
            historical_initial_capital=50_000,
        )
        losses = build_worst_case_returns(_sized_trades(), params)
        assert len(losses) == 6
        assert min(losses) == -1.0
        assert losses.count(-0.1) == 2

    def test_strategy_without_margin_uses_largest_loss(self) -> None:
        trades = [
            Trade(strategy="S", date_opened="2024-01-01", pl=300.0),
            Trade(strategy="S", date_opened="2024-01-02", pl=-2_500.0),
            Trade(strategy="W", date_opened="2024-01-03", pl=100.0),
        ]
        params = MonteCarloParams(worst_case_enabled=True)
        assert build_worst_case_returns(trades, params) == pytest.approx([-0.025])

    @pytest.mark.parametrize("method", ["trades", "percentage"])
    def test_injection_lowers_return_and_deepens_drawdown(self, method) -> None:
        trades = _sized_trades()
        normal = run_monte_carlo_projection(trades, MonteCarloParams(resample_method=method, **self.base))
        stressed = run_monte_carlo_projection(
            trades,
            MonteCarloParams(resample_method=method, worst_case_enabled=True, worst_case_percentage=5, **self.base),
        )
        assert normal.statistics.mean_max_drawdown == 0.0
        assert stressed.statistics.mean_total_return < normal.statistics.mean_total_return
        assert stressed.statistics.mean_max_drawdown > normal.statistics.mean_max_drawdown

    def test_per_lot_injection_lowers_return(self) -> None:
        trades = _sized_trades()
        common = {"resample_method": "percentage", "normalize_to_1_lot": True, **self.base}
        normal = run_monte_carlo_projection(trades, MonteCarloParams(**common))
        stressed = run_monte_carlo_projection(trades, MonteCarloParams(worst_case_enabled=True, **common))
        assert stressed.statistics.mean_total_return < normal.statistics.mean_total_return

    def test_daily_injection_lowers_return(self, trade_builder) -> None:
        rows = []
        balance = 100_000.0
        for i in range(60):
            pl = 200.0 if i % 3 == 0 else -50.0
            balance += pl
            rows.append((f"2024-{1 + i // 3 // 28:02d}-{1 + (i // 3) % 28:02d}", pl, balance, 5_000.0, "Daily"))
        trades = trade_builder(rows)
        normal = run_monte_carlo_projection(trades, MonteCarloParams(**self.base))
        stressed = run_monte_carlo_projection(
            trades, MonteCarloParams(worst_case_enabled=True, worst_case_percentage=10, **self.base)
        )
        assert stressed.statistics.mean_total_return < normal.statistics.mean_total_return

    def test_guarantee_hits_every_path(self) -> None:
        params = MonteCarloParams(
            num_simulations=100,
            simulation_length=10,
            random_seed=3,
            worst_case_enabled=True,
            worst_case_mode="guarantee",
        )
        result = simulate_return_paths([0.01, 0.02], params, worst_case_returns=[-0.5])
        assert min(sim.max_drawdown for sim in result.simulations) >= 0.5 - 1e-12

    def test_pool_can_miss_a_path(self) -> None:
        params = MonteCarloParams(num_simulations=300, simulation_length=10, random_seed=3, worst_case_enabled=True)
        result = simulate_return_paths([0.01] * 100, params, worst_case_returns=[-0.5])
        drawdowns = [sim.max_drawdown for sim in result.simulations]
        assert any(d == 0.0 for d in drawdowns)
        assert any(d >= 0.5 - 1e-12 for d in drawdowns)

    def test_defaults_to_worst_observed_step(self) -> None:
        params = MonteCarloParams(
            num_simulations=20,
            simulation_length=5,
            random_seed=1,
            worst_case_enabled=True,
            worst_case_mode="guarantee",
        )
        result = simulate_return_paths([0.05, -0.2], params)
        for sim in result.simulations:
            assert sim.max_drawdown >= 0.2 - 1e-12

    def test_seed_determinism(self) -> None:
        params = MonteCarloParams(resample_method="percentage", worst_case_enabled=True, **self.base)
        first = run_monte_carlo_projection(_sized_trades(), params)
        second = run_monte_carlo_projection(_sized_trades(), params)
        assert first.statistics.mean_total_return == second.statistics.mean_total_return

    def test_historical_capital_run(self) -> None:
        params = MonteCarloParams(
            num_simulations=100,
            simulation_length=50,
            resample_method="percentage",
            initial_capital=200_000,
            historical_initial_capital=100_000,
            worst_case_enabled=True,
            worst_case_mode="guarantee",
            worst_case_percentage=20,
            random_seed=42,
        )
        result = run_monte_carlo_projection(_sized_trades(), params)
        assert len(result.simulations) == 100
        assert result.simulations[0].path[0] == 200_000
        assert result.to_dict(include_paths=False)["parameters"]["worstCaseMode"] == "guarantee"


class TestPercentageReturns:
    """Tests for returns measured from a fixed starting balance."""

    def test_starting_balance_replaces_recorded_funds(self) -> None:
        trades = [
            Trade(strategy="S", date_opened="2024-01-01", pl=10.0, funds_at_close=1.7e12),
            Trade(strategy="S", date_opened="2024-01-02", pl=-20.0, funds_at_close=1.7e12),
        ]
        assert calculate_trade_returns(trades, 1_000.0) == pytest.approx([10 / 1_000, -20 / 1_010])

    def test_per_lot(self) -> None:
        trades = [
            Trade(strategy="S", date_opened="2024-01-01", pl=100.0, num_contracts=10),
            Trade(strategy="S", date_opened="2024-01-02", pl=50.0, num_contracts=None),
        ]
        assert calculate_trade_returns(trades, 1_000.0, per_lot=True) == pytest.approx([10 / 1_000, 50 / 1_010])
        assert lot_pl(trades[0]) == 100.0
        assert lot_pl(trades[0], per_lot=True) == 10.0
