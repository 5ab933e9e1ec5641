"""
Return extraction and date alignment.

Turns chronologically ordered trades into daily return series (per strategy
or pooled per block) and reconciles several series onto a common date axis.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Literal, Mapping, Sequence

import numpy as np
import pandas as pd

from strategy_allocator.errors import AllocationDataQualityError, AllocationInputError

logger = logging.getLogger(__name__)

DateAlignmentMode = Literal["overlapping", "zero-padding"]
DATE_ALIGNMENT_MODES: tuple[str, ...] = ("overlapping", "zero-padding")

FALLBACK_PORTFOLIO_VALUE = 10_000.0
# Balances above this are timestamps leaking into the funds field.
MAX_PLAUSIBLE_BALANCE = 1_000_000_000.0
MIN_RETURN_POINTS = 2
UNKNOWN_STRATEGY = "Unknown"


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Trade:
    """A closed trade as delivered by the trade store."""

    strategy: str
    date_opened: str | date | datetime
    pl: float
    time_opened: str = ""
    funds_at_close: float | None = None
    margin_req: float | None = None
    num_contracts: float | None = None
    date_closed: str | date | datetime | None = None
    time_closed: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Trade:
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        raw_pl = pick("pl")
        if raw_pl is None:
            raise AllocationInputError(
                f"Trade is missing 'pl': {dict(data)!r}",
                user_message="Every trade needs a 'pl' value.",
            )
        try:
            pl = float(raw_pl)
        except (TypeError, ValueError) as exc:
            raise AllocationInputError(
                f"Trade has a non-numeric 'pl': {raw_pl!r}",
                user_message="Every trade needs a numeric 'pl' value.",
            ) from exc

        return cls(
            strategy=str(pick("strategy", default=UNKNOWN_STRATEGY)),
            date_opened=pick("date_opened", "dateOpened"),
            pl=pl,
            time_opened=str(pick("time_opened", "timeOpened", default="")),
            funds_at_close=pick("funds_at_close", "fundsAtClose"),
            margin_req=pick("margin_req", "marginReq"),
            num_contracts=pick("num_contracts", "numContracts"),
            date_closed=pick("date_closed", "dateClosed"),
            time_closed=pick("time_closed", "timeClosed"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "dateOpened": date_key(self.date_opened),
            "timeOpened": self.time_opened,
            "pl": self.pl,
            "fundsAtClose": self.funds_at_close,
            "marginReq": self.margin_req,
            "numContracts": self.num_contracts,
            "dateClosed": date_key(self.date_closed),
            "timeClosed": self.time_closed,
        }


@dataclass(frozen=True)
class ReturnSeries:
    """Date-indexed daily returns, sorted with unique dates."""

    name: str
    dates: tuple[str, ...]
    returns: tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.dates) != len(self.returns):
            raise AllocationInputError(
                f"Return series '{self.name}' has {len(self.dates)} dates "
                f"but {len(self.returns)} returns"
            )
        for earlier, later in zip(self.dates, self.dates[1:]):
            if not earlier < later:
                raise AllocationInputError(
                    f"Return series '{self.name}' dates must be sorted and unique: "
                    f"{earlier!r} before {later!r}",
                    user_message=f"Series '{self.name}' has duplicate or out-of-order dates.",
                )

    def __len__(self) -> int:
        return len(self.dates)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "dates": list(self.dates), "returns": list(self.returns)}


@dataclass(frozen=True)
class AlignedReturns:
    """Return matrix on a common date axis (one row per asset)."""

    names: tuple[str, ...]
    dates: tuple[str, ...]
    returns: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        matrix = np.array(self.returns, dtype=float).reshape(len(self.names), len(self.dates))
        matrix.setflags(write=False)
        object.__setattr__(self, "returns", matrix)

    @classmethod
    def empty(cls) -> AlignedReturns:
        return cls(names=(), dates=(), returns=np.empty((0, 0)))

    @property
    def num_assets(self) -> int:
        return len(self.names)

    @property
    def num_dates(self) -> int:
        return len(self.dates)

    def weight_vector(self, weights: Mapping[str, float]) -> np.ndarray:
        """Weights ordered like `names`; unknown assets get zero."""
        return np.array([float(weights.get(name, 0.0)) for name in self.names], dtype=float)

    def weighted_returns(self, weights: Mapping[str, float]) -> np.ndarray:
        if not self.names:
            return np.zeros(len(self.dates))
        return self.weight_vector(weights) @ self.returns

    def to_dict(self) -> dict[str, Any]:
        return {
            "names": list(self.names),
            "dates": list(self.dates),
            "returns": self.returns.tolist(),
        }


@dataclass
class BlockStats:
    """Summary statistics for a block's raw trades."""

    total_pl: float = 0.0
    win_rate: float = 0.0
    trade_count: int = 0


@dataclass
class DateRange:
    start: str = ""
    end: str = ""
    days: int = 0


@dataclass
class DateRangeInfo:
    overall: DateRange
    overlapping: DateRange
    per_series: dict[str, DateRange] = field(default_factory=dict)


@dataclass
class BlockValidation:
    """Outcome of pre-optimization checks on a set of block series."""

    valid: bool
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    total_blocks: int = 0
    aligned_dates: int = 0
    date_range: DateRange | None = None


@dataclass
class EquityCurvePoint:
    date: str
    equity: float
    high_water_mark: float
    drawdown_pct: float


# ---------------------------------------------------------------------------
# Trade helpers
# ---------------------------------------------------------------------------


def date_key(value: Any) -> str | None:
    """Normalise a date-like value to YYYY-MM-DD, or None if unparseable."""
    if value is None:
        return None
    try:
        stamp = pd.Timestamp(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(stamp):
        return None
    return stamp.strftime("%Y-%m-%d")


def is_plausible_balance(funds: Any) -> bool:
    """True when a recorded account balance can seed a running value."""
    if funds is None or isinstance(funds, (date, datetime)):
        return False
    try:
        value = float(funds)
    except (TypeError, ValueError):
        return False
    return math.isfinite(value) and 0 < value <= MAX_PLAUSIBLE_BALANCE


def trades_from_frame(frame: pd.DataFrame) -> list[Trade]:
    """Build trades from a DataFrame with snake_case or camelCase columns."""
    records = frame.astype(object).where(frame.notna(), None).to_dict(orient="records")
    return [Trade.from_dict(record) for record in records]


def _trades_frame(trades: Iterable[Trade]) -> pd.DataFrame:
    rows = [
        {
            "strategy": trade.strategy or UNKNOWN_STRATEGY,
            "date": date_key(trade.date_opened),
            "time": str(trade.time_opened or ""),
            "pl": float(trade.pl),
            "funds_at_close": trade.funds_at_close,
        }
        for trade in trades
    ]
    frame = pd.DataFrame(rows, columns=["strategy", "date", "time", "pl", "funds_at_close"])
    invalid = frame["date"].isna() | ~np.isfinite(frame["pl"].astype(float))
    if invalid.any():
        logger.warning("Skipping %d trades with invalid dates or P&L", int(invalid.sum()))
        frame = frame.loc[~invalid]
    return frame.sort_values(["date", "time"], kind="mergesort").reset_index(drop=True)


def _starting_value(frame: pd.DataFrame, label: str) -> float:
    """Pre-trade balance of the first trade, or the nominal fallback."""
    corrupted = int((~frame["funds_at_close"].map(is_plausible_balance)).sum())
    if corrupted:
        logger.warning(
            "[%s] Found %d trades with missing or corrupted fundsAtClose values",
            label,
            corrupted,
        )

    first = frame.iloc[0]
    funds = first["funds_at_close"]
    pl = float(first["pl"])
    if is_plausible_balance(funds) and float(funds) > pl:
        return float(funds) - pl

    logger.warning(
        "[%s] Using fallback portfolio value %.2f for return calculation",
        label,
        FALLBACK_PORTFOLIO_VALUE,
    )
    return FALLBACK_PORTFOLIO_VALUE


def _returns_from_daily_pl(
    daily_pl: pd.Series,
    start_value: float,
    label: str,
) -> tuple[list[str], list[float]]:
    dates: list[str] = []
    returns: list[float] = []
    portfolio_value = start_value
    for day, pl in daily_pl.items():
        if portfolio_value <= 0:
            logger.warning(
                "[%s] Portfolio value exhausted on %s; dropping %d remaining days",
                label,
                day,
                len(daily_pl) - len(dates),
            )
            break
        dates.append(str(day))
        returns.append(float(pl) / portfolio_value)
        portfolio_value += float(pl)
    return dates, returns


def _series_from_frame(name: str, frame: pd.DataFrame) -> ReturnSeries | None:
    if frame.empty:
        return None
    daily_pl = frame.groupby("date", sort=True)["pl"].sum()
    dates, returns = _returns_from_daily_pl(daily_pl, _starting_value(frame, name), name)
    if len(returns) < MIN_RETURN_POINTS:
        logger.debug("[%s] Only %d return points; need at least %d", name, len(returns), MIN_RETURN_POINTS)
        return None
    return ReturnSeries(name=name, dates=tuple(dates), returns=tuple(returns))


# ---------------------------------------------------------------------------
# Return Extraction
# ---------------------------------------------------------------------------


def extract_strategy_returns(trades: Sequence[Trade]) -> list[ReturnSeries]:
    """One daily return series per strategy, in order of first appearance.

    Strategies yielding fewer than two daily returns are dropped.
    """
    frame = _trades_frame(trades)
    if frame.empty:
        return []

    order = list(dict.fromkeys((t.strategy or UNKNOWN_STRATEGY) for t in trades))
    output: list[ReturnSeries] = []
    for strategy in order:
        series = _series_from_frame(strategy, frame.loc[frame["strategy"] == strategy])
        if series is not None:
            output.append(series)
    return output


def extract_block_returns(
    block_id: str,
    block_name: str,
    trades: Sequence[Trade],
) -> ReturnSeries | None:
    """Daily returns for a whole block, summing P&L across its strategies."""
    if not trades:
        return None
    series = _series_from_frame(block_name, _trades_frame(trades))
    if series is None:
        logger.info("Block %s (%s) has insufficient data for returns", block_name, block_id)
    return series


def calculate_block_stats(trades: Sequence[Trade]) -> BlockStats:
    if not trades:
        return BlockStats()
    pls = [float(t.pl) for t in trades]
    winners = sum(1 for pl in pls if pl > 0)
    return BlockStats(
        total_pl=sum(pls),
        win_rate=winners / len(pls) * 100,
        trade_count=len(pls),
    )


# ---------------------------------------------------------------------------
# Date Alignment
# ---------------------------------------------------------------------------


def align_returns(
    series: Sequence[ReturnSeries],
    mode: DateAlignmentMode = "overlapping",
) -> AlignedReturns:
    """Put several return series on one date axis.

    ``overlapping`` keeps only dates present in every series; ``zero-padding``
    keeps every date and fills gaps with a 0.0 return.
    """
    if mode not in DATE_ALIGNMENT_MODES:
        raise AllocationInputError(f"Unknown date alignment mode: {mode!r}")
    if not series:
        return AlignedReturns.empty()

    names = [s.name for s in series]
    if len(set(names)) != len(names):
        raise AllocationInputError(f"Duplicate series names in alignment: {names}")

    columns = [pd.Series(s.returns, index=list(s.dates), name=s.name, dtype=float) for s in series]
    join = "inner" if mode == "overlapping" else "outer"
    frame = pd.concat(columns, axis=1, join=join).sort_index()

    if frame.empty:
        raise AllocationDataQualityError(
            "No overlapping dates found between series",
            user_message="No overlapping trading dates found. Consider using zero-padding mode.",
            details=f"series={names}",
        )

    frame = frame.fillna(0.0)
    return AlignedReturns(
        names=tuple(names),
        dates=tuple(str(d) for d in frame.index),
        returns=frame.to_numpy(dtype=float).T,
    )


def get_date_range_info(series: Sequence[ReturnSeries]) -> DateRangeInfo:
    if not series:
        return DateRangeInfo(overall=DateRange(), overlapping=DateRange())

    all_dates = sorted(d for s in series for d in s.dates)
    date_sets = [set(s.dates) for s in series]
    overlapping = sorted(set.intersection(*date_sets))

    return DateRangeInfo(
        overall=DateRange(start=all_dates[0], end=all_dates[-1], days=len(all_dates)),
        overlapping=DateRange(
            start=overlapping[0] if overlapping else "",
            end=overlapping[-1] if overlapping else "",
            days=len(overlapping),
        ),
        per_series={
            s.name: DateRange(
                start=s.dates[0] if s.dates else "",
                end=s.dates[-1] if s.dates else "",
                days=len(s.dates),
            )
            for s in series
        },
    )


def validate_blocks_for_optimization(
    series: Sequence[ReturnSeries],
    mode: DateAlignmentMode = "overlapping",
) -> BlockValidation:
    """Check block series before running an optimization."""
    if not series:
        return BlockValidation(valid=False, error="No blocks provided")
    if len(series) < 2:
        return BlockValidation(
            valid=False,
            error="At least 2 blocks are required for portfolio optimization",
            total_blocks=len(series),
        )

    try:
        aligned = align_returns(series, mode)
    except AllocationDataQualityError:
        aligned = AlignedReturns.empty()

    if aligned.num_dates < 2:
        return BlockValidation(
            valid=False,
            error=(
                "No overlapping trading dates found between blocks. Try zero-padding mode."
                if mode == "overlapping"
                else "Insufficient data for optimization"
            ),
            total_blocks=len(series),
            aligned_dates=aligned.num_dates,
        )

    warnings: list[str] = []
    if mode == "overlapping" and aligned.num_dates < 30:
        warnings.append(f"Limited overlapping data: only {aligned.num_dates} days")
    for s in series:
        coverage = len(s.dates) / aligned.num_dates
        if coverage < 0.5:
            warnings.append(f"{s.name} has limited data coverage ({coverage * 100:.0f}%)")

    info = get_date_range_info(series)
    return BlockValidation(
        valid=True,
        warnings=warnings,
        total_blocks=len(series),
        aligned_dates=aligned.num_dates,
        date_range=DateRange(start=info.overall.start, end=info.overall.end, days=aligned.num_dates),
    )


# ---------------------------------------------------------------------------
# Correlation and Equity
# ---------------------------------------------------------------------------


def calculate_correlation_matrix(aligned: AlignedReturns) -> pd.DataFrame:
    """Pearson correlation between aligned assets; zero-variance pairs get 0."""
    names = list(aligned.names)
    if not names or aligned.num_dates == 0:
        return pd.DataFrame()

    matrix = aligned.returns
    flat = np.ptp(matrix, axis=1) == 0
    with np.errstate(invalid="ignore", divide="ignore"):
        output = np.atleast_2d(np.corrcoef(matrix))
    output = np.nan_to_num(output, nan=0.0)
    output[flat, :] = 0.0
    output[:, flat] = 0.0
    np.fill_diagonal(output, 1.0)
    return pd.DataFrame(output, index=names, columns=names)


def simulate_weighted_equity(
    weights: Mapping[str, float],
    aligned: AlignedReturns,
    starting_capital: float = 100_000.0,
) -> list[EquityCurvePoint]:
    """Historical equity curve of a weighted portfolio on aligned returns."""
    if aligned.num_assets == 0 or aligned.num_dates == 0:
        return []

    curve: list[EquityCurvePoint] = []
    value = starting_capital
    high_water_mark = starting_capital
    for day, daily_return in zip(aligned.dates, aligned.weighted_returns(weights)):
        value *= 1 + float(daily_return)
        high_water_mark = max(high_water_mark, value)
        drawdown = (value - high_water_mark) / high_water_mark * 100 if high_water_mark > 0 else 0.0
        curve.append(
            EquityCurvePoint(
                date=day,
                equity=value,
                high_water_mark=high_water_mark,
                drawdown_pct=drawdown,
            )
        )
    return curve


__all__ = [
    "DATE_ALIGNMENT_MODES",
    "FALLBACK_PORTFOLIO_VALUE",
    "MAX_PLAUSIBLE_BALANCE",
    "AlignedReturns",
    "BlockStats",
    "BlockValidation",
    "DateAlignmentMode",
    "DateRange",
    "DateRangeInfo",
    "EquityCurvePoint",
    "ReturnSeries",
    "Trade",
    "align_returns",
    "calculate_block_stats",
    "calculate_correlation_matrix",
    "date_key",
    "extract_block_returns",
    "extract_strategy_returns",
    "get_date_range_info",
    "is_plausible_balance",
    "simulate_weighted_equity",
    "trades_from_frame",
    "validate_blocks_for_optimization",
]
