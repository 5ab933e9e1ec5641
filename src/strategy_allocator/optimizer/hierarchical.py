"""
Two-level hierarchical portfolio optimization.

Level 1 optimizes strategy weights inside each block and reduces the block to
one synthetic daily return series. Level 2 optimizes weights across those
synthetic series. The final allocation multiplies the two levels.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from strategy_allocator.analytics.frontier import (
    DEFAULT_PROGRESS_INTERVAL,
    CancelCheck,
    PortfolioMetrics,
    PortfolioResult,
    calculate_portfolio_metrics,
    identify_efficient_frontier,
    run_portfolio_simulation,
    select_optimal_portfolio,
    weights_summary,
)
from strategy_allocator.analytics.returns import (
    AlignedReturns,
    ReturnSeries,
    Trade,
    align_returns,
    extract_strategy_returns,
)
from strategy_allocator.common.config_manager import (
    HierarchicalConfig,
    Level1Config,
    Level2Config,
)
from strategy_allocator.errors import AllocationError, AllocationInputError

logger = logging.getLogger(__name__)

LEVEL1_STREAM = 1
LEVEL2_STREAM = 2


class OptimizationState(Enum):
    IDLE = "idle"
    LEVEL1_RUNNING = "level1-running"
    LEVEL1_DONE = "level1-done"
    LEVEL2_RUNNING = "level2-running"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS: dict[OptimizationState, frozenset[OptimizationState]] = {
    OptimizationState.IDLE: frozenset({OptimizationState.LEVEL1_RUNNING, OptimizationState.FAILED}),
    OptimizationState.LEVEL1_RUNNING: frozenset({OptimizationState.LEVEL1_DONE, OptimizationState.FAILED}),
    OptimizationState.LEVEL1_DONE: frozenset({OptimizationState.LEVEL2_RUNNING, OptimizationState.FAILED}),
    OptimizationState.LEVEL2_RUNNING: frozenset({OptimizationState.COMPLETE, OptimizationState.FAILED}),
    OptimizationState.COMPLETE: frozenset(),
    OptimizationState.FAILED: frozenset(),
}


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BlockInput:
    block_id: str
    block_name: str
    trades: tuple[Trade, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BlockInput:
        block_id = data.get("blockId", data.get("block_id"))
        block_name = data.get("blockName", data.get("block_name", block_id))
        if block_id is None:
            raise AllocationInputError("Block is missing 'blockId'")
        trades = tuple(
            t if isinstance(t, Trade) else Trade.from_dict(t) for t in data.get("trades", ())
        )
        return cls(block_id=str(block_id), block_name=str(block_name), trades=trades)


@dataclass(frozen=True)
class PhaseProgress:
    """Progress of one optimization phase plus its share of the whole run."""

    phase: int
    phase_progress: float
    message: str
    overall_progress: float

    @classmethod
    def create(cls, phase: int, phase_progress: float, message: str) -> PhaseProgress:
        pct = max(0.0, min(100.0, float(phase_progress)))
        overall = pct * 0.5 if phase == 1 else 50.0 + pct * 0.5
        return cls(phase=phase, phase_progress=pct, message=message, overall_progress=overall)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "phaseProgress": self.phase_progress,
            "message": self.message,
            "overallProgress": self.overall_progress,
        }


PhaseProgressCallback = Callable[[PhaseProgress], None]


@dataclass
class OptimizedBlock:
    block_id: str
    block_name: str
    strategy_weights: dict[str, float]
    metrics: PortfolioMetrics
    dates: list[str]
    returns: list[float]
    is_locked: bool
    strategy_returns: AlignedReturns
    trades: tuple[Trade, ...] = ()
    all_portfolios: list[PortfolioResult] = field(default_factory=list)
    efficient_frontier: list[PortfolioResult] = field(default_factory=list)
    frontier_fallback_used: bool = False

    @property
    def return_series(self) -> ReturnSeries:
        return ReturnSeries(name=self.block_name, dates=tuple(self.dates), returns=tuple(self.returns))

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockId": self.block_id,
            "blockName": self.block_name,
            "strategyWeights": dict(self.strategy_weights),
            "metrics": self.metrics.to_dict(),
            "dates": list(self.dates),
            "returns": list(self.returns),
            "isLocked": self.is_locked,
            "allPortfolios": [p.to_dict() for p in self.all_portfolios],
            "efficientFrontier": [p.to_dict() for p in self.efficient_frontier],
            "frontierFallbackUsed": self.frontier_fallback_used,
        }


@dataclass
class BlockAllocation:
    """Level-2 outcome: weights across blocks."""

    block_weights: dict[str, float]
    portfolio_metrics: PortfolioMetrics
    block_portfolios: list[PortfolioResult]
    block_efficient_frontier: list[PortfolioResult]
    frontier_fallback_used: bool
    aligned: AlignedReturns


@dataclass
class HierarchicalResult:
    optimized_blocks: list[OptimizedBlock]
    block_weights: dict[str, float]
    portfolio_metrics: PortfolioMetrics
    block_portfolios: list[PortfolioResult]
    block_efficient_frontier: list[PortfolioResult]
    combined_allocation: dict[str, dict[str, float]]
    config: HierarchicalConfig = field(default_factory=HierarchicalConfig)
    frontier_fallback_used: bool = False
    # set by optimizer.margin.attach_margin_filter
    filtered_result: Any | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "optimizedBlocks": [b.to_dict() for b in self.optimized_blocks],
            "blockWeights": dict(self.block_weights),
            "portfolioMetrics": self.portfolio_metrics.to_dict(),
            "blockPortfolios": [p.to_dict() for p in self.block_portfolios],
            "blockEfficientFrontier": [p.to_dict() for p in self.block_efficient_frontier],
            "combinedAllocation": {b: dict(s) for b, s in self.combined_allocation.items()},
            "frontierFallbackUsed": self.frontier_fallback_used,
            "config": self.config.to_dict(),
            "filteredResult": self.filtered_result.to_dict() if self.filtered_result is not None else None,
        }


# ---------------------------------------------------------------------------
# Level 1
# ---------------------------------------------------------------------------


def optimize_block_strategies(
    block_id: str,
    block_name: str,
    trades: Sequence[Trade],
    config: Level1Config,
    *,
    seed: int | None = None,
    stream: Sequence[int] = (LEVEL1_STREAM,),
    rng: np.random.Generator | None = None,
    progress_callback: Callable[[float], None] | None = None,
    cancel: CancelCheck | None = None,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
) -> OptimizedBlock:
    """Optimize strategy weights inside one block.

    A block with a single usable strategy is locked at weight 1.0 without
    sampling. Strategies are aligned with zero-padding so days a strategy did
    not trade count as flat.
    """
    series = extract_strategy_returns(trades)
    if not series:
        raise AllocationInputError(
            f"Block '{block_name}' has no strategies with enough data",
            user_message=f"Block '{block_name}' has no strategies with at least two trading days.",
        )

    aligned = align_returns(series, "zero-padding")

    if len(series) == 1:
        only = series[0]
        metrics = calculate_portfolio_metrics(
            [1.0], aligned.returns, config.risk_free_rate, config.annualization_factor
        )
        logger.info("Block %s locked to single strategy %s", block_name, only.name)
        if progress_callback is not None:
            progress_callback(100.0)
        return OptimizedBlock(
            block_id=block_id,
            block_name=block_name,
            strategy_weights={only.name: 1.0},
            metrics=metrics,
            dates=list(only.dates),
            returns=list(only.returns),
            is_locked=True,
            strategy_returns=aligned,
            trades=tuple(trades),
        )

    portfolios = run_portfolio_simulation(
        aligned,
        config.num_simulations,
        config.constraints,
        risk_free_rate=config.risk_free_rate,
        annualization_factor=config.annualization_factor,
        seed=seed,
        stream=stream,
        rng=rng,
        progress_callback=progress_callback,
        cancel=cancel,
        progress_interval=progress_interval,
    )
    frontier = identify_efficient_frontier(portfolios)
    selection = select_optimal_portfolio(portfolios, frontier, config.objective)
    weights = selection.portfolio.weights

    logger.info(
        "Block %s optimized over %d strategies (%s): %s",
        block_name,
        aligned.num_assets,
        config.objective,
        weights_summary(weights),
    )
    return OptimizedBlock(
        block_id=block_id,
        block_name=block_name,
        strategy_weights=dict(weights),
        metrics=selection.portfolio.metrics,
        dates=list(aligned.dates),
        returns=aligned.weighted_returns(weights).tolist(),
        is_locked=False,
        strategy_returns=aligned,
        trades=tuple(trades),
        all_portfolios=portfolios,
        efficient_frontier=frontier,
        frontier_fallback_used=selection.frontier_fallback_used,
    )


# ---------------------------------------------------------------------------
# Level 2
# ---------------------------------------------------------------------------


def optimize_block_allocation(
    optimized_blocks: Sequence[OptimizedBlock],
    config: Level2Config,
    *,
    seed: int | None = None,
    stream: Sequence[int] = (LEVEL2_STREAM,),
    rng: np.random.Generator | None = None,
    progress_callback: Callable[[float], None] | None = None,
    cancel: CancelCheck | None = None,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
) -> BlockAllocation:
    """Optimize weights across blocks; always maximizes Sharpe."""
    if len(optimized_blocks) < 2:
        raise AllocationInputError(
            f"At least 2 optimized blocks are required, got {len(optimized_blocks)}",
            user_message="At least 2 blocks are required for hierarchical optimization.",
        )

    block_config = config.block_config
    aligned = align_returns([b.return_series for b in optimized_blocks], block_config.date_alignment)
    portfolios = run_portfolio_simulation(
        aligned,
        config.num_simulations,
        config.constraints,
        risk_free_rate=block_config.risk_free_rate,
        annualization_factor=block_config.annualization_factor,
        seed=seed,
        stream=stream,
        rng=rng,
        progress_callback=progress_callback,
        cancel=cancel,
        progress_interval=progress_interval,
    )
    frontier = identify_efficient_frontier(portfolios)
    selection = select_optimal_portfolio(portfolios, frontier, "max-sharpe")

    logger.info(
        "Block allocation over %d blocks and %d dates: %s",
        aligned.num_assets,
        aligned.num_dates,
        weights_summary(selection.portfolio.weights),
    )
    return BlockAllocation(
        block_weights=dict(selection.portfolio.weights),
        portfolio_metrics=selection.portfolio.metrics,
        block_portfolios=portfolios,
        block_efficient_frontier=frontier,
        frontier_fallback_used=selection.frontier_fallback_used,
        aligned=aligned,
    )


# ---------------------------------------------------------------------------
# Allocation helpers
# ---------------------------------------------------------------------------


def combine_allocation(
    optimized_blocks: Sequence[OptimizedBlock],
    block_weights: Mapping[str, float],
) -> dict[str, dict[str, float]]:
    """block -> strategy -> block weight x strategy weight."""
    return {
        block.block_name: {
            strategy: float(block_weights.get(block.block_name, 0.0)) * weight
            for strategy, weight in block.strategy_weights.items()
        }
        for block in optimized_blocks
    }


def get_flat_allocation(combined: Mapping[str, Mapping[str, float]]) -> dict[str, float]:
    return {
        f"{block} / {strategy}": weight
        for block, strategies in combined.items()
        for strategy, weight in strategies.items()
    }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class HierarchicalOptimizer:
    """Runs Level 1 for every block, then Level 2, tracking state."""

    def __init__(
        self,
        config: HierarchicalConfig | None = None,
        *,
        progress_callback: PhaseProgressCallback | None = None,
        cancel: CancelCheck | None = None,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
    ) -> None:
        self.config = config or HierarchicalConfig()
        self.progress_callback = progress_callback
        self.cancel = cancel
        self.progress_interval = progress_interval
        self._state = OptimizationState.IDLE
        self._rng: np.random.Generator | None = None

    @property
    def state(self) -> OptimizationState:
        return self._state

    def _transition(self, target: OptimizationState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise AllocationError(f"Invalid optimizer transition {self._state.value} -> {target.value}")
        logger.debug("Optimizer state %s -> %s", self._state.value, target.value)
        self._state = target

    def _emit(self, phase: int, phase_progress: float, message: str) -> None:
        if self.progress_callback is not None:
            self.progress_callback(PhaseProgress.create(phase, phase_progress, message))

    def _validate(self, blocks: Sequence[BlockInput]) -> None:
        if len(blocks) < 2:
            raise AllocationInputError(
                f"At least 2 blocks are required, got {len(blocks)}",
                user_message="At least 2 blocks are required for hierarchical optimization.",
            )
        names = [b.block_name for b in blocks]
        if len(set(names)) != len(names):
            raise AllocationInputError(f"Block names must be unique: {names}")
        for block in blocks:
            if not block.trades:
                raise AllocationInputError(
                    f"Block '{block.block_name}' has no trades",
                    user_message=f"Block '{block.block_name}' has no trades.",
                )
        self.config.level2.constraints.validate_for(len(blocks))

    def _run_level1(self, blocks: Sequence[BlockInput]) -> list[OptimizedBlock]:
        seed = self.config.random_seed
        total = len(blocks)
        optimized: list[OptimizedBlock] = []

        for index, block in enumerate(blocks):
            message = f"Optimizing {block.block_name} ({index + 1}/{total})"

            def on_progress(pct: float, index: int = index, message: str = message) -> None:
                self._emit(1, (index + pct / 100.0) / total * 100.0, message)

            optimized.append(
                optimize_block_strategies(
                    block.block_id,
                    block.block_name,
                    block.trades,
                    self.config.level1,
                    seed=seed,
                    stream=(LEVEL1_STREAM, index),
                    rng=self._rng,
                    progress_callback=on_progress,
                    cancel=self.cancel,
                    progress_interval=self.progress_interval,
                )
            )
            self._emit(1, (index + 1) / total * 100.0, f"Optimized {block.block_name}")

        return optimized

    def _run_level2(self, optimized: Sequence[OptimizedBlock]) -> BlockAllocation:
        self._emit(2, 0.0, "Optimizing block allocation")
        allocation = optimize_block_allocation(
            optimized,
            self.config.level2,
            seed=self.config.random_seed,
            stream=(LEVEL2_STREAM,),
            rng=self._rng,
            progress_callback=lambda pct: self._emit(2, pct, "Optimizing block allocation"),
            cancel=self.cancel,
            progress_interval=self.progress_interval,
        )
        self._emit(2, 100.0, "Optimization complete")
        return allocation

    def run(self, blocks: Sequence[BlockInput]) -> HierarchicalResult:
        if self._state is not OptimizationState.IDLE:
            raise AllocationError(f"Optimizer already used (state={self._state.value})")

        try:
            self._validate(blocks)
        except AllocationError:
            self._transition(OptimizationState.FAILED)
            raise

        if self.config.random_seed is None:
            self._rng = np.random.default_rng()

        try:
            self._transition(OptimizationState.LEVEL1_RUNNING)
            logger.info("Level 1: optimizing strategies in %d blocks", len(blocks))
            optimized = self._run_level1(blocks)
            self._transition(OptimizationState.LEVEL1_DONE)

            self._transition(OptimizationState.LEVEL2_RUNNING)
            logger.info("Level 2: optimizing allocation across %d blocks", len(optimized))
            allocation = self._run_level2(optimized)
            combined = combine_allocation(optimized, allocation.block_weights)
            self._transition(OptimizationState.COMPLETE)
        except Exception:
            self._state = OptimizationState.FAILED
            raise

        return HierarchicalResult(
            optimized_blocks=optimized,
            block_weights=allocation.block_weights,
            portfolio_metrics=allocation.portfolio_metrics,
            block_portfolios=allocation.block_portfolios,
            block_efficient_frontier=allocation.block_efficient_frontier,
            combined_allocation=combined,
            config=self.config,
            frontier_fallback_used=allocation.frontier_fallback_used,
        )


def run_hierarchical_optimization(
    blocks: Sequence[BlockInput],
    config: HierarchicalConfig | None = None,
    progress_callback: PhaseProgressCallback | None = None,
    cancel: CancelCheck | None = None,
    *,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
) -> HierarchicalResult:
    """Run both optimization levels and combine their weights."""
    optimizer = HierarchicalOptimizer(
        config,
        progress_callback=progress_callback,
        cancel=cancel,
        progress_interval=progress_interval,
    )
    return optimizer.run(blocks)


__all__ = [
    "BlockAllocation",
    "BlockInput",
    "HierarchicalOptimizer",
    "HierarchicalResult",
    "OptimizationState",
    "OptimizedBlock",
    "PhaseProgress",
    "PhaseProgressCallback",
    "combine_allocation",
    "get_flat_allocation",
    "optimize_block_allocation",
    "optimize_block_strategies",
    "run_hierarchical_optimization",
]
