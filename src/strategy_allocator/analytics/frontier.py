"""
Constrained random-portfolio sampling, portfolio metrics and efficient
frontier selection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Literal, Mapping, Sequence

import numpy as np

from strategy_allocator.analytics.returns import AlignedReturns
from strategy_allocator.errors import AllocationCancelledError, AllocationInputError

logger = logging.getLogger(__name__)

Objective = Literal["max-sharpe", "min-volatility", "max-return"]
OBJECTIVES: tuple[str, ...] = ("max-sharpe", "min-volatility", "max-return")

DEFAULT_RISK_FREE_RATE = 2.0
DEFAULT_ANNUALIZATION_FACTOR = 252
DEFAULT_PROGRESS_INTERVAL = 50

_SUM_TOLERANCE = 1e-12

ProgressCallback = Callable[[float], None]
CancelCheck = Callable[[], bool]


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PortfolioConstraints:
    min_weight: float = 0.0
    max_weight: float = 1.0
    fully_invested: bool = True
    allow_leverage: bool = False

    def __post_init__(self) -> None:
        if not (0.0 <= self.min_weight <= self.max_weight <= 1.0):
            raise AllocationInputError(
                f"Invalid weight bounds: min={self.min_weight}, max={self.max_weight}",
                user_message="Weight bounds must satisfy 0 <= min <= max <= 1.",
            )

    @property
    def sums_to_one(self) -> bool:
        """Whether sampled weights are re-normalized to a unit sum."""
        return self.fully_invested or not self.allow_leverage

    def validate_for(self, asset_count: int) -> None:
        """Raise if no weight vector of this size can satisfy the bounds."""
        if asset_count <= 0 or not self.sums_to_one:
            return
        if asset_count * self.min_weight > 1.0 + _SUM_TOLERANCE:
            raise AllocationInputError(
                f"Infeasible constraints: {asset_count} assets x min weight {self.min_weight} exceeds 1",
                user_message="Minimum weight is too high for the number of assets.",
            )
        if asset_count * self.max_weight < 1.0 - _SUM_TOLERANCE:
            raise AllocationInputError(
                f"Infeasible constraints: {asset_count} assets x max weight {self.max_weight} is below 1",
                user_message="Maximum weight is too low for the number of assets.",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "minWeight": self.min_weight,
            "maxWeight": self.max_weight,
            "fullyInvested": self.fully_invested,
            "allowLeverage": self.allow_leverage,
        }


@dataclass(frozen=True)
class PortfolioMetrics:
    annualized_return: float = 0.0
    annualized_volatility: float = 0.0
    sharpe_ratio: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "annualizedReturn": self.annualized_return,
            "annualizedVolatility": self.annualized_volatility,
            "sharpeRatio": self.sharpe_ratio,
        }


@dataclass(frozen=True)
class PortfolioResult:
    weights: dict[str, float]
    annualized_return: float
    annualized_volatility: float
    sharpe_ratio: float
    is_efficient: bool = False

    @property
    def metrics(self) -> PortfolioMetrics:
        return PortfolioMetrics(
            annualized_return=self.annualized_return,
            annualized_volatility=self.annualized_volatility,
            sharpe_ratio=self.sharpe_ratio,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "weights": dict(self.weights),
            **self.metrics.to_dict(),
            "isEfficient": self.is_efficient,
        }


@dataclass(frozen=True)
class PortfolioSelection:
    portfolio: PortfolioResult
    frontier_fallback_used: bool = False


@dataclass
class SimulationOutcome:
    """Everything one sampling run produces."""

    portfolios: list[PortfolioResult] = field(default_factory=list)
    efficient_frontier: list[PortfolioResult] = field(default_factory=list)
    selection: PortfolioSelection | None = None


# ---------------------------------------------------------------------------
# Random Streams
# ---------------------------------------------------------------------------


def trial_rng(seed: int, index: int, stream: Sequence[int] = ()) -> np.random.Generator:
    """Independent generator for one trial, derived from (seed, stream, index)."""
    entropy = [int(seed) % (2**63), *(int(s) for s in stream), int(index)]
    return np.random.default_rng(entropy)


# ---------------------------------------------------------------------------
# Constrained Sampler
# ---------------------------------------------------------------------------


def sample_weights(
    asset_count: int,
    constraints: PortfolioConstraints,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw one random weight vector honouring the constraints."""
    if asset_count <= 0:
        return np.empty(0)

    draws = rng.random(asset_count)
    total = float(draws.sum())
    weights = draws / total if total > 0 else np.full(asset_count, 1.0 / asset_count)
    weights = np.clip(weights, constraints.min_weight, constraints.max_weight)

    if not constraints.sums_to_one:
        return weights
    return _redistribute_residual(weights, constraints.min_weight, constraints.max_weight)


def _redistribute_residual(weights: np.ndarray, lower: float, upper: float) -> np.ndarray:
    """Move the sum back to 1, sharing the residual by available headroom."""
    residual = 1.0 - float(weights.sum())
    if abs(residual) <= _SUM_TOLERANCE:
        return weights

    headroom = (upper - weights) if residual > 0 else (weights - lower)
    capacity = float(headroom.sum())
    if capacity <= 0:
        return weights

    adjusted = weights + residual * headroom / capacity
    return np.clip(adjusted, lower, upper)


# ---------------------------------------------------------------------------
# Portfolio Metrics
# ---------------------------------------------------------------------------


def calculate_return_metrics(
    daily_returns: Sequence[float] | np.ndarray,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    annualization_factor: float = DEFAULT_ANNUALIZATION_FACTOR,
) -> PortfolioMetrics:
    """Annualized return, volatility (both in percent) and Sharpe of a daily series."""
    values = np.asarray(daily_returns, dtype=float)
    if values.size == 0:
        return PortfolioMetrics()

    annualized_return = float(np.mean(values)) * annualization_factor * 100
    # identical observations have exactly zero spread; np.std can leave rounding residue
    std = 0.0 if np.ptp(values) == 0 else float(np.std(values))
    annualized_volatility = std * math.sqrt(annualization_factor) * 100
    sharpe = (
        (annualized_return - risk_free_rate) / annualized_volatility
        if annualized_volatility > 0
        else 0.0
    )

    metrics = (annualized_return, annualized_volatility, sharpe)
    if not all(math.isfinite(m) for m in metrics):
        logger.warning("Non-finite portfolio metrics %s coerced to zero", metrics)
        annualized_return, annualized_volatility, sharpe = (
            m if math.isfinite(m) else 0.0 for m in metrics
        )

    return PortfolioMetrics(
        annualized_return=annualized_return,
        annualized_volatility=annualized_volatility,
        sharpe_ratio=sharpe,
    )


def calculate_portfolio_metrics(
    weights: Sequence[float] | np.ndarray,
    returns: np.ndarray,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    annualization_factor: float = DEFAULT_ANNUALIZATION_FACTOR,
) -> PortfolioMetrics:
    """Metrics of a weighted portfolio over a (assets x dates) return matrix."""
    matrix = np.asarray(returns, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix[np.newaxis, :]
    vector = np.asarray(weights, dtype=float)
    if vector.size == 0 or matrix.size == 0:
        return PortfolioMetrics()
    return calculate_return_metrics(vector @ matrix, risk_free_rate, annualization_factor)


# ---------------------------------------------------------------------------
# Sampling Loop
# ---------------------------------------------------------------------------


def run_portfolio_simulation(
    aligned: AlignedReturns,
    num_simulations: int,
    constraints: PortfolioConstraints,
    *,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    annualization_factor: float = DEFAULT_ANNUALIZATION_FACTOR,
    seed: int | None = None,
    stream: Sequence[int] = (),
    rng: np.random.Generator | None = None,
    progress_callback: ProgressCallback | None = None,
    cancel: CancelCheck | None = None,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
) -> list[PortfolioResult]:
    """Sample `num_simulations` constrained portfolios and score each one.

    With a seed, trial ``i`` draws from ``trial_rng(seed, i, stream)`` so the
    result does not depend on how trials are scheduled. Progress is reported
    in percent every `progress_interval` trials and on the last one.
    """
    asset_count = aligned.num_assets
    if asset_count < 2:
        raise AllocationInputError(f"At least 2 assets are required, got {asset_count}")
    if aligned.num_dates < 2:
        raise AllocationInputError(
            f"Insufficient aligned data: {aligned.num_dates} dates",
            user_message="Not enough aligned trading days to optimize.",
        )
    if num_simulations <= 0:
        raise AllocationInputError(f"num_simulations must be positive, got {num_simulations}")
    constraints.validate_for(asset_count)

    shared_rng = rng if rng is not None else np.random.default_rng()
    interval = max(1, int(progress_interval))
    names = aligned.names
    portfolios: list[PortfolioResult] = []

    for index in range(num_simulations):
        if cancel is not None and cancel():
            raise AllocationCancelledError(
                f"Simulation cancelled after {index} of {num_simulations} trials",
                user_message="Optimization cancelled",
            )

        generator = trial_rng(seed, index, stream) if seed is not None else shared_rng
        weights = sample_weights(asset_count, constraints, generator)
        metrics = calculate_portfolio_metrics(
            weights, aligned.returns, risk_free_rate, annualization_factor
        )
        portfolios.append(
            PortfolioResult(
                weights={name: float(w) for name, w in zip(names, weights)},
                annualized_return=metrics.annualized_return,
                annualized_volatility=metrics.annualized_volatility,
                sharpe_ratio=metrics.sharpe_ratio,
            )
        )

        done = index + 1
        if progress_callback is not None and (done % interval == 0 or done == num_simulations):
            logger.debug("Simulated %d/%d portfolios", done, num_simulations)
            progress_callback(done / num_simulations * 100)

    return portfolios


# ---------------------------------------------------------------------------
# Efficient Frontier
# ---------------------------------------------------------------------------


def identify_efficient_frontier(portfolios: Sequence[PortfolioResult]) -> list[PortfolioResult]:
    """Non-dominated portfolios, in encounter order, flagged `is_efficient`.

    B dominates A when B has at least A's return at no more volatility and is
    strictly better in one of the two. Portfolios with non-finite metrics are
    never efficient.
    """
    if not portfolios:
        return []

    returns = np.array([p.annualized_return for p in portfolios], dtype=float)
    vols = np.array([p.annualized_volatility for p in portfolios], dtype=float)
    finite = np.isfinite(returns) & np.isfinite(vols)

    # volatility ascending, then return descending
    order = [int(k) for k in np.lexsort((-returns, vols)) if finite[k]]
    efficient = np.zeros(len(portfolios), dtype=bool)
    best_lower_vol = -math.inf

    start = 0
    while start < len(order):
        stop = start
        while stop < len(order) and vols[order[stop]] == vols[order[start]]:
            stop += 1
        group_best = returns[order[start]]
        for k in order[start:stop]:
            if returns[k] == group_best and returns[k] > best_lower_vol:
                efficient[k] = True
        best_lower_vol = max(best_lower_vol, group_best)
        start = stop

    return [replace(p, is_efficient=True) for p, keep in zip(portfolios, efficient) if keep]


def select_optimal_portfolio(
    portfolios: Sequence[PortfolioResult],
    frontier: Sequence[PortfolioResult],
    objective: Objective = "max-sharpe",
) -> PortfolioSelection:
    """Pick the frontier portfolio best under `objective`; first wins ties."""
    if objective not in OBJECTIVES:
        raise AllocationInputError(f"Unknown optimization objective: {objective!r}")

    candidates = list(frontier)
    fallback = False
    if not candidates:
        candidates = list(portfolios)
        fallback = True
        if candidates:
            logger.warning("Efficient frontier is empty; selecting from all %d portfolios", len(candidates))
    if not candidates:
        raise AllocationInputError("No portfolios available for selection")

    best = candidates[0]
    for candidate in candidates[1:]:
        if objective == "max-sharpe":
            better = candidate.sharpe_ratio > best.sharpe_ratio
        elif objective == "min-volatility":
            better = candidate.annualized_volatility < best.annualized_volatility
        else:
            better = candidate.annualized_return > best.annualized_return
        if better:
            best = candidate

    return PortfolioSelection(portfolio=best, frontier_fallback_used=fallback)


def optimize_portfolio(
    aligned: AlignedReturns,
    num_simulations: int,
    constraints: PortfolioConstraints,
    objective: Objective = "max-sharpe",
    **simulation_kwargs: Any,
) -> SimulationOutcome:
    """Sample, filter to the frontier and select in one call."""
    portfolios = run_portfolio_simulation(aligned, num_simulations, constraints, **simulation_kwargs)
    frontier = identify_efficient_frontier(portfolios)
    selection = select_optimal_portfolio(portfolios, frontier, objective)
    return SimulationOutcome(portfolios=portfolios, efficient_frontier=frontier, selection=selection)


def weights_summary(weights: Mapping[str, float]) -> str:
    return ", ".join(f"{name}={weight:.2%}" for name, weight in weights.items())


__all__ = [
    "DEFAULT_ANNUALIZATION_FACTOR",
    "DEFAULT_PROGRESS_INTERVAL",
    "DEFAULT_RISK_FREE_RATE",
    "OBJECTIVES",
    "CancelCheck",
    "Objective",
    "PortfolioConstraints",
    "PortfolioMetrics",
    "PortfolioResult",
    "PortfolioSelection",
    "ProgressCallback",
    "SimulationOutcome",
    "calculate_portfolio_metrics",
    "calculate_return_metrics",
    "identify_efficient_frontier",
    "optimize_portfolio",
    "run_portfolio_simulation",
    "sample_weights",
    "select_optimal_portfolio",
    "trial_rng",
    "weights_summary",
]
