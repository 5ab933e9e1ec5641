"""
Strategy Allocator - hierarchical capital allocation across trading strategies.

Builds daily return series from trades, samples constrained random portfolios,
keeps the efficient ones, optimizes within and across strategy blocks, checks
the allocation against margin requirements and projects it forward with a
bootstrap Monte Carlo simulation.
"""

from __future__ import annotations

__version__ = "0.1.0"

# =============================================================================
# CORE COMPONENTS
# =============================================================================

from .analytics.frontier import (
    PortfolioConstraints,
    PortfolioMetrics,
    PortfolioResult,
    calculate_portfolio_metrics,
    identify_efficient_frontier,
    select_optimal_portfolio,
)
from .analytics.projection import MonteCarloParams, MonteCarloResult, run_monte_carlo_projection
from .analytics.returns import ReturnSeries, Trade, align_returns, extract_block_returns, extract_strategy_returns
from .common.config_manager import ConfigError, HierarchicalConfig, load_hierarchical_config
from .errors import (
    AllocationCancelledError,
    AllocationComputationError,
    AllocationDataQualityError,
    AllocationError,
    AllocationInputError,
)
from .optimizer.hierarchical import (
    BlockInput,
    HierarchicalOptimizer,
    HierarchicalResult,
    OptimizationState,
    PhaseProgress,
    get_flat_allocation,
    run_hierarchical_optimization,
)
from .optimizer.margin import FilteredResult, apply_minimum_margin_filter, attach_margin_filter

__all__ = [
    "__version__",
    # errors
    "AllocationCancelledError",
    "AllocationComputationError",
    "AllocationDataQualityError",
    "AllocationError",
    "AllocationInputError",
    "ConfigError",
    # returns
    "ReturnSeries",
    "Trade",
    "align_returns",
    "extract_block_returns",
    "extract_strategy_returns",
    # portfolio
    "PortfolioConstraints",
    "PortfolioMetrics",
    "PortfolioResult",
    "calculate_portfolio_metrics",
    "identify_efficient_frontier",
    "select_optimal_portfolio",
    # hierarchy
    "BlockInput",
    "HierarchicalConfig",
    "HierarchicalOptimizer",
    "HierarchicalResult",
    "OptimizationState",
    "PhaseProgress",
    "get_flat_allocation",
    "load_hierarchical_config",
    "run_hierarchical_optimization",
    # margin
    "FilteredResult",
    "apply_minimum_margin_filter",
    "attach_margin_filter",
    # projection
    "MonteCarloParams",
    "MonteCarloResult",
    "run_monte_carlo_projection",
]
