"""Shared pytest fixtures for strategy_allocator tests."""

from __future__ import annotations

import numpy as np
import pytest

from strategy_allocator.analytics.returns import Trade
from strategy_allocator.common.config_manager import HierarchicalConfig
from strategy_allocator.optimizer.hierarchical import BlockInput


def make_trades(rows: list[tuple], strategy: str | None = None) -> list[Trade]:
    """Build trades from (date, pl, funds_at_close, margin_req[, strategy]) tuples."""
    trades: list[Trade] = []
    for row in rows:
        date, pl, funds, margin = row[:4]
        name = row[4] if len(row) > 4 else strategy
        trades.append(
            Trade(
                strategy=name,
                date_opened=date,
                time_opened="09:30:00",
                pl=float(pl),
                funds_at_close=float(funds),
                margin_req=float(margin),
                date_closed=date,
                time_closed="15:45:00",
            )
        )
    return trades


@pytest.fixture
def dc_trades() -> list[Trade]:
    """Two interleaved strategies, odd January dates."""
    return make_trades(
        [
            ("2024-01-01", 500, 100500, 5000, "Iron Condor"),
            ("2024-01-03", -100, 100400, 6000, "Credit Spread"),
            ("2024-01-05", -100, 100300, 4000, "Iron Condor"),
            ("2024-01-07", -50, 100250, 7500, "Credit Spread"),
            ("2024-01-09", 500, 100750, 4500, "Iron Condor"),
            ("2024-01-11", -50, 100700, 5500, "Credit Spread"),
        ]
    )


@pytest.fixture
def zero_dte_trades() -> list[Trade]:
    """Two interleaved strategies, even January dates."""
    return make_trades(
        [
            ("2024-01-02", 1000, 201000, 10000, "0DTE Butterfly"),
            ("2024-01-04", -100, 200900, 9000, "0DTE Iron Condor"),
            ("2024-01-06", 800, 201700, 7500, "0DTE Butterfly"),
            ("2024-01-08", 1100, 202800, 11000, "0DTE Iron Condor"),
            ("2024-01-10", 900, 203700, 8500, "0DTE Butterfly"),
            ("2024-01-12", -100, 203600, 9500, "0DTE Iron Condor"),
        ]
    )


@pytest.fixture
def single_strategy_trades() -> list[Trade]:
    return make_trades(
        [
            ("2024-01-01", 700, 100700, 7500),
            ("2024-01-03", -100, 100600, 8000),
            ("2024-01-05", 700, 101300, 7000),
        ],
        strategy="Single Strategy",
    )


@pytest.fixture
def dc_block(dc_trades) -> BlockInput:
    return BlockInput(block_id="block-1", block_name="DC Portfolio", trades=tuple(dc_trades))


@pytest.fixture
def zero_dte_block(zero_dte_trades) -> BlockInput:
    return BlockInput(block_id="block-2", block_name="0DTE Portfolio", trades=tuple(zero_dte_trades))


@pytest.fixture
def single_block(single_strategy_trades) -> BlockInput:
    return BlockInput(block_id="block-3", block_name="Single Block", trades=tuple(single_strategy_trades))


@pytest.fixture
def fast_config() -> HierarchicalConfig:
    """Small, seeded, zero-padded run for quick end-to-end tests."""
    return HierarchicalConfig.from_dict(
        {
            "level1": {"numSimulations": 50},
            "level2": {"numSimulations": 50, "blockConfig": {"dateAlignment": "zero-padding"}},
            "randomSeed": 11,
        }
    )


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(seed=2024)


@pytest.fixture
def trade_builder():
    return make_trades
