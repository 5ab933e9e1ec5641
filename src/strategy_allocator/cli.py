"""
Strategy Allocator Command Line Interface.

Usage:
    strategy-allocator --help
    strategy-allocator optimize trades.csv --config allocator.yaml --seed 7
    strategy-allocator optimize trades.csv --capital 250000 --output result.json
    strategy-allocator project trades.csv --simulations 2000 --length 252
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path

import pandas as pd

from . import __version__
from .errors import AllocationError


def _read_trades(path: str) -> pd.DataFrame:
    csv_path = Path(path)
    if not csv_path.exists():
        print(f"[X] Trades file not found: {csv_path}")
        sys.exit(1)
    return pd.read_csv(csv_path)


def _write_output(payload: dict, output: str | None) -> None:
    if not output:
        return
    Path(output).write_text(json.dumps(payload, indent=2), encoding="utf-8")
    print(f"\nSaved results to {output}")


def load_blocks(frame: pd.DataFrame, block_column: str = "block") -> list:
    """Split a trades table into blocks by `block_column`."""
    from .analytics.returns import trades_from_frame
    from .optimizer.hierarchical import BlockInput

    if block_column not in frame.columns:
        raise AllocationError(
            f"Trades file has no '{block_column}' column",
            user_message=f"Add a '{block_column}' column naming each trade's block.",
        )

    blocks = []
    for name, group in frame.groupby(block_column, sort=False):
        trades = trades_from_frame(group.drop(columns=[block_column]))
        block_id = str(name).strip().lower().replace(" ", "-")
        blocks.append(BlockInput(block_id=block_id, block_name=str(name), trades=tuple(trades)))
    return blocks


def cmd_optimize(args) -> None:
    """Run the two-level optimization."""
    from .common.config_manager import load_hierarchical_config
    from .optimizer.hierarchical import get_flat_allocation, run_hierarchical_optimization
    from .optimizer.margin import attach_margin_filter

    config = load_hierarchical_config(args.config)
    if args.seed is not None:
        config = dataclasses.replace(config, random_seed=args.seed)
    blocks = load_blocks(_read_trades(args.trades), args.block_column)

    print(f"Optimizing {len(blocks)} blocks...")

    def on_progress(progress) -> None:
        if args.verbose:
            print(f"  [{progress.overall_progress:5.1f}%] {progress.message}")

    result = run_hierarchical_optimization(blocks, config, progress_callback=on_progress)
    if args.capital is not None:
        result = attach_margin_filter(result, args.capital)

    metrics = result.portfolio_metrics
    print("\nPortfolio:")
    print(f"  Annual Return: {metrics.annualized_return:.2f}%")
    print(f"  Volatility: {metrics.annualized_volatility:.2f}%")
    print(f"  Sharpe Ratio: {metrics.sharpe_ratio:.2f}")

    print("\nAllocation:")
    for label, weight in get_flat_allocation(result.combined_allocation).items():
        print(f"  {label}: {weight:.2%}")

    filtered = result.filtered_result
    if filtered is not None:
        print(f"\nMargin filter at capital {args.capital:,.0f}:")
        for item in filtered.filtered_strategies:
            print(
                f"  [X] {item.block_name} / {item.strategy_name}: "
                f"{item.allocated_capital:,.0f} < {item.required_margin:,.0f}"
            )
        for label, weight in get_flat_allocation(filtered.combined_allocation).items():
            print(f"  {label}: {weight:.2%}")
    elif args.capital is not None:
        print(f"\n[OK] All strategies meet margin requirements at capital {args.capital:,.0f}")

    _write_output(result.to_dict(), args.output)


def cmd_project(args) -> None:
    """Run a forward Monte Carlo projection."""
    from .analytics.projection import run_monte_carlo_projection
    from .analytics.returns import trades_from_frame
    from .common.config_manager import parse_monte_carlo_params

    params = parse_monte_carlo_params(
        {
            "num_simulations": args.simulations,
            "simulation_length": args.length,
            "resample_method": args.method,
            "initial_capital": args.capital,
            "trades_per_year": args.trades_per_year,
            "random_seed": args.seed,
            "historical_initial_capital": args.historical_capital,
            "worst_case_enabled": args.worst_case is not None,
            "worst_case_percentage": args.worst_case if args.worst_case is not None else 5.0,
            "worst_case_mode": args.worst_case_mode,
            "normalize_to_1_lot": args.per_lot,
        }
    )
    trades = trades_from_frame(_read_trades(args.trades))
    result = run_monte_carlo_projection(trades, params)

    stats = result.statistics
    print(f"Projection ({params.num_simulations} paths x {params.simulation_length} steps):")
    print(f"  Median Final Value: {stats.median_final_value:,.2f}")
    print(f"  Probability of Profit: {stats.probability_of_profit:.2%}")
    print(f"  Mean Max Drawdown: {stats.mean_max_drawdown:.2%}")
    print(f"  5% Value at Risk: {stats.value_at_risk['p5']:,.2f}")

    _write_output(result.to_dict(include_paths=args.include_paths), args.output)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strategy-allocator",
        description="Strategy Allocator - hierarchical capital allocation across trading strategies",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Override ALLOCATOR_LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    optimize_parser = subparsers.add_parser("optimize", help="Optimize allocation across blocks")
    optimize_parser.add_argument("trades", help="CSV of trades with a block column")
    optimize_parser.add_argument("--block-column", default="block", help="Column naming each trade's block")
    optimize_parser.add_argument("--config", default=None, help="YAML optimization config")
    optimize_parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible runs")
    optimize_parser.add_argument("--capital", type=float, default=None, help="Capital for the margin filter")
    optimize_parser.add_argument("--output", default=None, help="Write the result as JSON")
    optimize_parser.add_argument("--verbose", action="store_true", help="Print progress updates")
    optimize_parser.set_defaults(func=cmd_optimize)

    project_parser = subparsers.add_parser("project", help="Monte Carlo projection of a trade history")
    project_parser.add_argument("trades", help="CSV of trades")
    project_parser.add_argument("--simulations", type=int, default=1000, help="Number of paths")
    project_parser.add_argument("--length", type=int, default=252, help="Steps per path")
    project_parser.add_argument(
        "--method", choices=["daily", "trades", "percentage"], default="daily", help="Resample unit"
    )
    project_parser.add_argument("--capital", type=float, default=100_000.0, help="Initial capital")
    project_parser.add_argument("--trades-per-year", type=int, default=252, help="Annualization factor")
    project_parser.add_argument("--seed", type=int, default=None, help="Random seed")
    project_parser.add_argument(
        "--historical-capital", type=float, default=None, help="Starting balance of the trade history"
    )
    project_parser.add_argument(
        "--worst-case", type=float, default=None, metavar="PCT", help="Inject max-margin losses at PCT percent"
    )
    project_parser.add_argument(
        "--worst-case-mode", choices=["pool", "guarantee"], default="pool", help="How worst-case losses enter paths"
    )
    project_parser.add_argument("--per-lot", action="store_true", help="Normalize P&L and margin to one contract")
    project_parser.add_argument("--include-paths", action="store_true", help="Keep every path in the JSON output")
    project_parser.add_argument("--output", default=None, help="Write the result as JSON")
    project_parser.set_defaults(func=cmd_project)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    from .observability import configure_logging_from_settings
    from .settings import EngineSettings

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = EngineSettings.from_env()
    if args.log_level:
        settings = dataclasses.replace(settings, log_level=args.log_level.upper())
    configure_logging_from_settings(settings)

    if getattr(args, "seed", None) is None and settings.random_seed is not None:
        args.seed = settings.random_seed

    try:
        args.func(args)
    except AllocationError as exc:
        print(f"[X] {exc.user_message}")
        sys.exit(2)


if __name__ == "__main__":
    main()
