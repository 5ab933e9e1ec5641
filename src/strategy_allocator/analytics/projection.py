"""
Forward Monte Carlo projection by bootstrap resampling of historical returns.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Literal, Mapping, Sequence

import numpy as np

from strategy_allocator.analytics.frontier import (
    DEFAULT_PROGRESS_INTERVAL,
    CancelCheck,
    ProgressCallback,
)
from strategy_allocator.analytics.returns import (
    FALLBACK_PORTFOLIO_VALUE,
    UNKNOWN_STRATEGY,
    AlignedReturns,
    Trade,
    date_key,
    extract_block_returns,
    is_plausible_balance,
)
from strategy_allocator.errors import AllocationCancelledError, AllocationComputationError, AllocationInputError

logger = logging.getLogger(__name__)

ResampleMethod = Literal["daily", "trades", "percentage"]
RESAMPLE_METHODS: tuple[str, ...] = ("daily", "trades", "percentage")
WorstCaseMode = Literal["pool", "guarantee"]
WORST_CASE_MODES: tuple[str, ...] = ("pool", "guarantee")
MAX_WORST_CASE_PERCENTAGE = 20.0
PERCENTILES: tuple[int, ...] = (5, 25, 50, 75, 95)
MIN_OBSERVATIONS = 2


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonteCarloParams:
    """Projection settings.

    `historical_initial_capital` is the balance the trade history started
    from; percentage resampling and worst-case losses are measured against
    it, falling back to `initial_capital`. Worst-case injection adds each
    strategy's maximum margin as a synthetic full loss, either to the
    resample pool ("pool") or forced into every path ("guarantee").
    """

    num_simulations: int = 1000
    simulation_length: int = 252
    resample_method: ResampleMethod = "daily"
    initial_capital: float = 100_000.0
    trades_per_year: int = 252
    random_seed: int | None = None
    historical_initial_capital: float | None = None
    worst_case_enabled: bool = False
    worst_case_percentage: float = 5.0
    worst_case_mode: WorstCaseMode = "pool"
    normalize_to_1_lot: bool = False

    def __post_init__(self) -> None:
        if self.num_simulations <= 0:
            raise AllocationInputError(f"num_simulations must be positive, got {self.num_simulations}")
        if self.simulation_length <= 0:
            raise AllocationInputError(f"simulation_length must be positive, got {self.simulation_length}")
        if self.resample_method not in RESAMPLE_METHODS:
            raise AllocationInputError(f"Unknown resample method: {self.resample_method!r}")
        if not (self.initial_capital > 0 and math.isfinite(self.initial_capital)):
            raise AllocationInputError(f"initial_capital must be positive, got {self.initial_capital}")
        if self.trades_per_year <= 0:
            raise AllocationInputError(f"trades_per_year must be positive, got {self.trades_per_year}")
        if self.historical_initial_capital is not None and not (
            self.historical_initial_capital > 0 and math.isfinite(self.historical_initial_capital)
        ):
            raise AllocationInputError(
                f"historical_initial_capital must be positive, got {self.historical_initial_capital}"
            )
        if not 0 < self.worst_case_percentage <= MAX_WORST_CASE_PERCENTAGE:
            raise AllocationInputError(
                f"worst_case_percentage must be in (0, {MAX_WORST_CASE_PERCENTAGE:g}], "
                f"got {self.worst_case_percentage}"
            )
        if self.worst_case_mode not in WORST_CASE_MODES:
            raise AllocationInputError(f"Unknown worst-case mode: {self.worst_case_mode!r}")

    @property
    def capital_base(self) -> float:
        if self.historical_initial_capital is not None:
            return float(self.historical_initial_capital)
        return float(self.initial_capital)

    def to_dict(self) -> dict[str, Any]:
        return {
            "numSimulations": self.num_simulations,
            "simulationLength": self.simulation_length,
            "resampleMethod": self.resample_method,
            "initialCapital": self.initial_capital,
            "tradesPerYear": self.trades_per_year,
            "randomSeed": self.random_seed,
            "historicalInitialCapital": self.historical_initial_capital,
            "worstCaseEnabled": self.worst_case_enabled,
            "worstCasePercentage": self.worst_case_percentage,
            "worstCaseMode": self.worst_case_mode,
            "normalizeTo1Lot": self.normalize_to_1_lot,
        }


@dataclass
class SimulationPath:
    path: list[float]
    final_value: float
    max_drawdown: float
    total_return: float
    sharpe_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": list(self.path),
            "finalValue": self.final_value,
            "maxDrawdown": self.max_drawdown,
            "totalReturn": self.total_return,
            "sharpeRatio": self.sharpe_ratio,
        }


@dataclass
class PercentileBands:
    steps: list[int] = field(default_factory=list)
    p5: list[float] = field(default_factory=list)
    p25: list[float] = field(default_factory=list)
    p50: list[float] = field(default_factory=list)
    p75: list[float] = field(default_factory=list)
    p95: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, list]:
        return {
            "steps": list(self.steps),
            "p5": list(self.p5),
            "p25": list(self.p25),
            "p50": list(self.p50),
            "p75": list(self.p75),
            "p95": list(self.p95),
        }


@dataclass
class ProjectionStatistics:
    median_final_value: float = 0.0
    mean_final_value: float = 0.0
    std_final_value: float = 0.0
    probability_of_profit: float = 0.0
    mean_max_drawdown: float = 0.0
    median_total_return: float = 0.0
    mean_total_return: float = 0.0
    mean_sharpe_ratio: float = 0.0
    value_at_risk: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "medianFinalValue": self.median_final_value,
            "meanFinalValue": self.mean_final_value,
            "stdFinalValue": self.std_final_value,
            "probabilityOfProfit": self.probability_of_profit,
            "meanMaxDrawdown": self.mean_max_drawdown,
            "medianTotalReturn": self.median_total_return,
            "meanTotalReturn": self.mean_total_return,
            "meanSharpeRatio": self.mean_sharpe_ratio,
            "valueAtRisk": dict(self.value_at_risk),
        }


@dataclass
class MonteCarloResult:
    simulations: list[SimulationPath]
    percentiles: PercentileBands
    statistics: ProjectionStatistics
    parameters: MonteCarloParams

    def to_dict(self, include_paths: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "percentiles": self.percentiles.to_dict(),
            "statistics": self.statistics.to_dict(),
            "parameters": self.parameters.to_dict(),
        }
        if include_paths:
            payload["simulations"] = [s.to_dict() for s in self.simulations]
        return payload


# ---------------------------------------------------------------------------
# Step Returns
# ---------------------------------------------------------------------------


def lot_pl(trade: Trade, per_lot: bool = False) -> float:
    """Trade P&L, divided by its contract count when normalizing to one lot."""
    pl = float(trade.pl)
    if per_lot:
        return pl / _contracts(trade)
    return pl


def _contracts(trade: Trade) -> float:
    try:
        contracts = float(trade.num_contracts) if trade.num_contracts is not None else 1.0
    except (TypeError, ValueError):
        return 1.0
    return contracts if math.isfinite(contracts) and contracts > 0 else 1.0


def _ordered_trades(trades: Sequence[Trade]) -> list[Trade]:
    dated = [
        (date_key(t.date_opened), t)
        for t in trades
        if math.isfinite(float(t.pl))
    ]
    return [
        t
        for key, t in sorted(
            ((key, t) for key, t in dated if key is not None),
            key=lambda item: (item[0], str(item[1].time_opened or "")),
        )
    ]


def _compounded(pl_values: Sequence[float], balance: float) -> list[float]:
    returns: list[float] = []
    for pl in pl_values:
        if balance <= 0:
            logger.warning("Balance exhausted; ignoring %d remaining steps", len(pl_values) - len(returns))
            break
        returns.append(pl / balance)
        balance += pl
    return returns


def calculate_trade_returns(
    trades: Sequence[Trade],
    starting_balance: float | None = None,
    *,
    per_lot: bool = False,
) -> list[float]:
    """Per-trade returns: each trade's P&L over the balance before it.

    Without `starting_balance` the balance is recovered from the first
    trade's fundsAtClose.
    """
    ordered = _ordered_trades(trades)
    if not ordered:
        return []

    if starting_balance is not None:
        balance = float(starting_balance)
    else:
        first = ordered[0]
        if is_plausible_balance(first.funds_at_close) and float(first.funds_at_close) > float(first.pl):
            balance = float(first.funds_at_close) - float(first.pl)
        else:
            logger.warning("Using fallback balance %.2f for per-trade returns", FALLBACK_PORTFOLIO_VALUE)
            balance = FALLBACK_PORTFOLIO_VALUE

    return _compounded([lot_pl(t, per_lot) for t in ordered], balance)


def _daily_lot_returns(trades: Sequence[Trade], starting_balance: float) -> list[float]:
    daily = [
        sum(lot_pl(t, per_lot=True) for t in group)
        for _, group in groupby(_ordered_trades(trades), key=lambda t: date_key(t.date_opened))
    ]
    return _compounded(daily, starting_balance)


def _step_returns(trades: Sequence[Trade], params: MonteCarloParams) -> list[float]:
    method = params.resample_method
    per_lot = params.normalize_to_1_lot
    if method == "daily":
        if per_lot:
            return _daily_lot_returns(trades, params.capital_base)
        series = extract_block_returns("projection", "Projection", trades)
        return list(series.returns) if series is not None else []
    # one-lot P&L no longer matches the recorded balances
    if method == "percentage" or per_lot:
        return calculate_trade_returns(trades, params.capital_base, per_lot=per_lot)
    return calculate_trade_returns(trades)


def build_worst_case_returns(trades: Sequence[Trade], params: MonteCarloParams) -> list[float]:
    """Synthetic maximum-loss step returns for worst-case injection.

    Each strategy contributes `worst_case_percentage` percent of its trade
    count (at least one) losses equal to its largest margin requirement,
    per contract when normalizing to one lot, as a fraction of the capital
    base. A strategy without margin data uses its largest historical loss.
    """
    per_lot = params.normalize_to_1_lot
    by_strategy: dict[str, list[Trade]] = {}
    for trade in trades:
        if math.isfinite(float(trade.pl)):
            by_strategy.setdefault(trade.strategy or UNKNOWN_STRATEGY, []).append(trade)

    base = params.capital_base
    losses: list[float] = []
    for strategy, group in sorted(by_strategy.items()):
        margins = [
            float(t.margin_req) / (_contracts(t) if per_lot else 1.0)
            for t in group
            if t.margin_req is not None and math.isfinite(float(t.margin_req)) and float(t.margin_req) > 0
        ]
        if margins:
            loss = max(margins)
        else:
            loss = -min(lot_pl(t, per_lot) for t in group)
            if loss <= 0:
                logger.debug("Strategy %s has no margin or losing trades; nothing to inject", strategy)
                continue
        count = max(1, math.ceil(len(group) * params.worst_case_percentage / 100))
        losses.extend([-min(loss / base, 1.0)] * count)
    return losses


def build_portfolio_trades(
    weights: Mapping[str, float],
    aligned: AlignedReturns,
    initial_capital: float = 100_000.0,
    strategy_name: str = "Portfolio",
) -> list[Trade]:
    """Synthetic daily trades of a weighted portfolio, for projection."""
    trades: list[Trade] = []
    capital = float(initial_capital)
    for day, daily_return in zip(aligned.dates, aligned.weighted_returns(weights)):
        pl = capital * float(daily_return)
        capital += pl
        trades.append(
            Trade(
                strategy=strategy_name,
                date_opened=day,
                time_opened="09:30:00",
                pl=pl,
                funds_at_close=capital,
                date_closed=day,
                time_closed="16:00:00",
            )
        )
    return trades


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


def _injected_losses(
    values: np.ndarray,
    params: MonteCarloParams,
    worst_case_returns: Sequence[float] | None,
) -> np.ndarray:
    if not params.worst_case_enabled:
        return np.empty(0)
    if worst_case_returns is None:
        count = max(1, math.ceil(values.size * params.worst_case_percentage / 100))
        worst_case_returns = [float(values.min())] * count if values.min() < 0 else []
    worst = np.asarray(worst_case_returns, dtype=float)
    worst = worst[np.isfinite(worst)]
    if worst.size == 0:
        logger.warning("Worst-case injection enabled but there are no losses to inject")
    else:
        logger.info(
            "Injecting %d worst-case losses (%s mode, worst %.2f%%)",
            worst.size,
            params.worst_case_mode,
            float(worst.min()) * 100,
        )
    return worst


def simulate_return_paths(
    step_returns: Sequence[float] | np.ndarray,
    params: MonteCarloParams,
    *,
    worst_case_returns: Sequence[float] | None = None,
    progress_callback: ProgressCallback | None = None,
    cancel: CancelCheck | None = None,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
) -> MonteCarloResult:
    """Bootstrap equity paths from a sequence of per-step returns.

    With worst-case injection enabled, `worst_case_returns` (default: the
    worst observed step) either joins the resample pool or, in guarantee
    mode, overwrites `worst_case_percentage` percent of every path's steps.
    """
    raw = np.asarray(step_returns, dtype=float)
    values = raw[np.isfinite(raw)]
    if raw.size >= MIN_OBSERVATIONS and values.size < MIN_OBSERVATIONS:
        raise AllocationComputationError(
            f"Only {values.size} of {raw.size} step returns are finite",
            user_message="Trade history produced invalid returns; check P&L and balance fields.",
        )
    if values.size < MIN_OBSERVATIONS:
        raise AllocationInputError(
            f"Projection needs at least {MIN_OBSERVATIONS} returns, got {values.size}",
            user_message="Not enough trading history to run a projection.",
        )

    rng = np.random.default_rng(params.random_seed)
    sims = params.num_simulations
    length = params.simulation_length
    worst = _injected_losses(values, params, worst_case_returns)
    pool = values
    forced = 0
    if worst.size and params.worst_case_mode == "pool":
        pool = np.concatenate([values, worst])
    elif worst.size:
        forced = min(length, max(1, math.ceil(length * params.worst_case_percentage / 100)))
    interval = max(1, int(progress_interval))

    paths = np.empty((sims, length + 1), dtype=float)
    sampled = np.empty((sims, length), dtype=float)
    paths[:, 0] = params.initial_capital

    for sim in range(sims):
        if cancel is not None and cancel():
            raise AllocationCancelledError(
                f"Projection cancelled after {sim} of {sims} simulations",
                user_message="Projection cancelled",
            )
        draws = pool[rng.integers(0, pool.size, size=length)]
        if forced:
            slots = rng.choice(length, size=forced, replace=False)
            draws[slots] = worst[rng.integers(0, worst.size, size=forced)]
        # a path that loses everything stays at zero
        growth = np.maximum(1.0 + draws, 0.0)
        sampled[sim] = growth - 1.0
        paths[sim, 1:] = params.initial_capital * np.cumprod(growth)

        done = sim + 1
        if progress_callback is not None and (done % interval == 0 or done == sims):
            progress_callback(done / sims * 100)

    final_values = paths[:, -1]
    total_returns = final_values / params.initial_capital - 1.0
    peaks = np.maximum.accumulate(paths, axis=1)
    max_drawdowns = (1.0 - paths / peaks).max(axis=1)

    step_std = np.where(np.ptp(sampled, axis=1) == 0, 0.0, sampled.std(axis=1))
    step_mean = sampled.mean(axis=1)
    safe_std = np.where(step_std > 0, step_std, 1.0)
    sharpes = np.where(
        step_std > 0,
        step_mean / safe_std * math.sqrt(params.trades_per_year),
        0.0,
    )

    simulations = [
        SimulationPath(
            path=paths[i].tolist(),
            final_value=float(final_values[i]),
            max_drawdown=float(max_drawdowns[i]),
            total_return=float(total_returns[i]),
            sharpe_ratio=float(sharpes[i]),
        )
        for i in range(sims)
    ]

    bands = np.percentile(paths, PERCENTILES, axis=0)
    percentiles = PercentileBands(
        steps=list(range(length + 1)),
        p5=bands[0].tolist(),
        p25=bands[1].tolist(),
        p50=bands[2].tolist(),
        p75=bands[3].tolist(),
        p95=bands[4].tolist(),
    )

    statistics = ProjectionStatistics(
        median_final_value=float(np.median(final_values)),
        mean_final_value=float(np.mean(final_values)),
        std_final_value=float(np.std(final_values)),
        probability_of_profit=float(np.mean(total_returns > 0)),
        mean_max_drawdown=float(np.mean(max_drawdowns)),
        median_total_return=float(np.median(total_returns)),
        mean_total_return=float(np.mean(total_returns)),
        mean_sharpe_ratio=float(np.mean(sharpes)),
        value_at_risk={"p5": float(np.percentile(final_values, 5))},
    )

    logger.info(
        "Projection complete: %d paths x %d steps, median final %.2f",
        sims,
        length,
        statistics.median_final_value,
    )
    return MonteCarloResult(
        simulations=simulations,
        percentiles=percentiles,
        statistics=statistics,
        parameters=params,
    )


def run_monte_carlo_projection(
    trades: Sequence[Trade],
    params: MonteCarloParams,
    progress_callback: ProgressCallback | None = None,
    cancel: CancelCheck | None = None,
    *,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
) -> MonteCarloResult:
    """Project a trade history forward by resampling its daily or per-trade returns."""
    step_returns = _step_returns(trades, params)
    if len(step_returns) < MIN_OBSERVATIONS:
        raise AllocationInputError(
            f"Insufficient {params.resample_method} returns for projection: {len(step_returns)}",
            user_message="Not enough trading history to run a projection.",
        )
    return simulate_return_paths(
        step_returns,
        params,
        worst_case_returns=build_worst_case_returns(trades, params) if params.worst_case_enabled else None,
        progress_callback=progress_callback,
        cancel=cancel,
        progress_interval=progress_interval,
    )


__all__ = [
    "PERCENTILES",
    "RESAMPLE_METHODS",
    "WORST_CASE_MODES",
    "MonteCarloParams",
    "MonteCarloResult",
    "PercentileBands",
    "ProjectionStatistics",
    "ResampleMethod",
    "WorstCaseMode",
    "SimulationPath",
    "build_portfolio_trades",
    "build_worst_case_returns",
    "calculate_trade_returns",
    "lot_pl",
    "run_monte_carlo_projection",
    "simulate_return_paths",
]
