"""
Minimum-margin feasibility filter.

Drops strategies whose allocated capital cannot cover their typical margin
requirement, hands the freed weight to the surviving strategies of the same
block and recomputes block and portfolio metrics.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np

from strategy_allocator.analytics.frontier import (
    PortfolioMetrics,
    calculate_portfolio_metrics,
    calculate_return_metrics,
)
from strategy_allocator.analytics.returns import ReturnSeries, Trade, align_returns
from strategy_allocator.errors import AllocationInputError
from strategy_allocator.optimizer.hierarchical import HierarchicalResult, OptimizedBlock

logger = logging.getLogger(__name__)

MarginRequirements = Mapping[str, Mapping[str, float]]


@dataclass(frozen=True)
class FilteredStrategy:
    block_name: str
    strategy_name: str
    allocated_capital: float
    required_margin: float
    weight: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockName": self.block_name,
            "strategyName": self.strategy_name,
            "allocatedCapital": self.allocated_capital,
            "requiredMargin": self.required_margin,
            "weight": self.weight,
        }


@dataclass
class FilteredResult:
    combined_allocation: dict[str, dict[str, float]]
    block_weights: dict[str, float]
    block_metrics: dict[str, PortfolioMetrics]
    portfolio_metrics: PortfolioMetrics
    filtered_strategies: list[FilteredStrategy] = field(default_factory=list)
    total_filtered_weight: float = 0.0
    redistributed_weight: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "combinedAllocation": {b: dict(s) for b, s in self.combined_allocation.items()},
            "blockWeights": dict(self.block_weights),
            "blockMetrics": {b: m.to_dict() for b, m in self.block_metrics.items()},
            "portfolioMetrics": self.portfolio_metrics.to_dict(),
            "filteredStrategies": [s.to_dict() for s in self.filtered_strategies],
            "totalFilteredWeight": self.total_filtered_weight,
            "redistributedWeight": self.redistributed_weight,
        }


def calculate_strategy_margin_requirements(trades: Sequence[Trade]) -> dict[str, float]:
    """Mean positive margin requirement per strategy."""
    samples: dict[str, list[float]] = defaultdict(list)
    for trade in trades:
        if trade.margin_req is None:
            continue
        try:
            margin = float(trade.margin_req)
        except (TypeError, ValueError):
            continue
        if math.isfinite(margin) and margin > 0:
            samples[trade.strategy or "Unknown"].append(margin)
    return {strategy: sum(values) / len(values) for strategy, values in samples.items()}


def _block_daily_returns(block: OptimizedBlock, weights: Mapping[str, float], total: float) -> np.ndarray:
    if total <= 0:
        return np.zeros(block.strategy_returns.num_dates)
    normalized = {name: w / total for name, w in weights.items()}
    return block.strategy_returns.weighted_returns(normalized)


def apply_minimum_margin_filter(
    result: HierarchicalResult,
    total_capital: float,
    margin_requirements: MarginRequirements | None = None,
) -> FilteredResult | None:
    """Filter the combined allocation against per-strategy margin needs.

    A strategy is dropped when it has a positive requirement and its share of
    `total_capital` is below it. Returns None when nothing is dropped.
    """
    if not (total_capital > 0 and math.isfinite(total_capital)):
        raise AllocationInputError(f"total_capital must be positive, got {total_capital}")

    if margin_requirements is None:
        margin_requirements = {
            block.block_name: calculate_strategy_margin_requirements(block.trades)
            for block in result.optimized_blocks
        }

    combined: dict[str, dict[str, float]] = {}
    filtered: list[FilteredStrategy] = []
    total_filtered = 0.0
    redistributed = 0.0

    for block in result.optimized_blocks:
        allocation = result.combined_allocation.get(block.block_name, {})
        margins = margin_requirements.get(block.block_name, {})

        kept: dict[str, float] = {}
        dropped = 0.0
        for strategy, weight in allocation.items():
            required = float(margins.get(strategy, 0.0))
            allocated = weight * total_capital
            if required > 0 and allocated < required:
                filtered.append(
                    FilteredStrategy(
                        block_name=block.block_name,
                        strategy_name=strategy,
                        allocated_capital=allocated,
                        required_margin=required,
                        weight=weight,
                    )
                )
                dropped += weight
            else:
                kept[strategy] = weight

        kept_total = sum(kept.values())
        if dropped > 0 and kept_total > 0:
            scale = (kept_total + dropped) / kept_total
            kept = {strategy: weight * scale for strategy, weight in kept.items()}
            redistributed += dropped
        elif dropped > 0:
            logger.warning("All allocated strategies in block %s fail margin requirements", block.block_name)
            kept = {strategy: 0.0 for strategy in kept}
            total_filtered += dropped
        combined[block.block_name] = kept

    if not filtered:
        logger.info("All strategies meet margin requirements at capital %.2f", total_capital)
        return None

    block_weights = {name: sum(weights.values()) for name, weights in combined.items()}
    level1 = result.config.level1
    block_config = result.config.level2.block_config

    block_metrics: dict[str, PortfolioMetrics] = {}
    block_series: list[ReturnSeries] = []
    for block in result.optimized_blocks:
        daily = _block_daily_returns(block, combined[block.block_name], block_weights[block.block_name])
        block_metrics[block.block_name] = (
            calculate_return_metrics(daily, level1.risk_free_rate, level1.annualization_factor)
            if block_weights[block.block_name] > 0
            else PortfolioMetrics()
        )
        block_series.append(
            ReturnSeries(
                name=block.block_name,
                dates=block.strategy_returns.dates,
                returns=tuple(float(r) for r in daily),
            )
        )

    aligned = align_returns(block_series, block_config.date_alignment)
    portfolio_metrics = calculate_portfolio_metrics(
        aligned.weight_vector(block_weights),
        aligned.returns,
        block_config.risk_free_rate,
        block_config.annualization_factor,
    )

    logger.info(
        "Margin filter removed %d strategies (%.4f weight redistributed, %.4f weight dropped)",
        len(filtered),
        redistributed,
        total_filtered,
    )
    return FilteredResult(
        combined_allocation=combined,
        block_weights=block_weights,
        block_metrics=block_metrics,
        portfolio_metrics=portfolio_metrics,
        filtered_strategies=filtered,
        total_filtered_weight=total_filtered,
        redistributed_weight=redistributed,
    )


def attach_margin_filter(
    result: HierarchicalResult,
    total_capital: float,
    margin_requirements: MarginRequirements | None = None,
) -> HierarchicalResult:
    """Copy of `result` carrying the filtered allocation (or None)."""
    filtered = apply_minimum_margin_filter(result, total_capital, margin_requirements)
    return dataclasses.replace(result, filtered_result=filtered)


__all__ = [
    "FilteredResult",
    "FilteredStrategy",
    "MarginRequirements",
    "apply_minimum_margin_filter",
    "attach_margin_filter",
    "calculate_strategy_margin_requirements",
]
