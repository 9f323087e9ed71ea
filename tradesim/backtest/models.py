from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional, Protocol, Sequence, Union

import pandas as pd

from tradesim.core.exceptions import DataValidationError

InstrumentId = Union[int, str]

BAR_COLUMNS = ("open", "high", "low", "close", "volume")


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class ExitReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TAKE_PROFIT = "take_profit"
    END_OF_BACKTEST = "end_of_backtest"


class PositionSizingMethod(str, Enum):
    RISK_BASED = "risk_based"
    FIXED = "fixed"
    EQUAL_WEIGHT = "equal_weight"


class WindowType(str, Enum):
    ROLLING = "rolling"
    EXPANDING = "expanding"


class RebalanceFrequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Timeframe(str, Enum):
    DAILY = "1D"
    WEEKLY = "1W"


class OptimizationMetric(str, Enum):
    SHARPE_RATIO = "sharpe_ratio"
    SORTINO_RATIO = "sortino_ratio"
    TOTAL_RETURN = "total_return"
    ANNUALIZED_RETURN = "annualized_return"
    PROFIT_FACTOR = "profit_factor"
    WIN_RATE = "win_rate"
    COMPOSITE = "composite"


def as_direction(value: "Direction | str") -> Direction:
    if isinstance(value, Direction):
        return value
    return Direction(str(value).strip().lower())


@dataclass(frozen=True, slots=True)
class Candle:
    """Normalized OHLCV bar."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def day(self) -> date:
        ts = self.timestamp
        return ts.date() if isinstance(ts, datetime) else ts

    def as_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True, slots=True)
class Instrument:
    id: InstrumentId
    symbol: str
    tradable: bool = True


@dataclass(frozen=True, slots=True)
class Signal:
    """
    Entry decision produced by a strategy evaluator.

    Attributes:
        direction (Direction): Long or short.
        entry_price (float): Intended fill before slippage.
        stop_loss (float): Initial protective stop.
        take_profit (float): Profit target.
        quantity (int): Units to trade; 0 lets the sizing method decide.
        trailing_stop_pct (float | None): Trailing distance as % of the extreme price.
        trailing_stop_amount (float | None): Trailing distance in price units.
        score (float): Ranking score used when slots are scarce.
    """

    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    quantity: int = 0
    trailing_stop_pct: Optional[float] = None
    trailing_stop_amount: Optional[float] = None
    score: float = 0.0

    @classmethod
    def coerce(cls, raw: "Signal | Mapping[str, Any] | None") -> Optional["Signal"]:
        """Accept a Signal or a mapping using either long or short key names."""
        if raw is None or isinstance(raw, Signal):
            return raw
        if not isinstance(raw, Mapping):
            raise DataValidationError(f"unsupported signal payload: {type(raw)!r}")

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return default

        try:
            return cls(
                direction=as_direction(pick("direction", default="long")),
                entry_price=float(pick("entry_price", "price")),
                stop_loss=float(pick("stop_loss", "sl")),
                take_profit=float(pick("take_profit", "tp")),
                quantity=int(pick("quantity", "qty", default=0)),
                trailing_stop_pct=pick("trailing_stop_pct"),
                trailing_stop_amount=pick("trailing_stop_amount"),
                score=float(pick("score", default=0.0)),
            )
        except (TypeError, ValueError) as exc:
            raise DataValidationError(f"malformed signal {dict(raw)!r}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class CandleView:
    """Bars visible to a strategy on ``as_of``; nothing later is included."""

    as_of: date
    daily: pd.DataFrame
    weekly: Optional[pd.DataFrame] = None

    @property
    def last_bar_date(self) -> Optional[date]:
        if self.daily.empty:
            return None
        return self.daily.index[-1].date()


class ExitCheck(NamedTuple):
    exit_price: float
    exit_reason: ExitReason


@dataclass(frozen=True, slots=True)
class EquityPoint:
    date: Optional[date]
    equity: float

    def as_dict(self) -> dict:
        return {"date": self.date, "equity": self.equity}


@dataclass(frozen=True, slots=True)
class BacktestWindow:
    in_sample_start: date
    in_sample_end: date
    out_of_sample_start: date
    out_of_sample_end: date

    def as_dict(self) -> dict:
        return {
            "in_sample_start": self.in_sample_start,
            "in_sample_end": self.in_sample_end,
            "out_of_sample_start": self.out_of_sample_start,
            "out_of_sample_end": self.out_of_sample_end,
        }


@dataclass(frozen=True, slots=True)
class SimulationTrial:
    final_capital: float
    total_return: float
    total_pnl: float
    max_drawdown: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    equity_curve: tuple = field(default=(), repr=False)

    def summary(self) -> dict:
        return {
            "final_capital": self.final_capital,
            "total_return": self.total_return,
            "total_pnl": self.total_pnl,
            "max_drawdown": self.max_drawdown,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
        }


# -------- External collaborators --------
class CandleFeed(Protocol):
    def load(
        self,
        instrument: Instrument,
        timeframe: Timeframe,
        from_date: date,
        to_date: date,
    ) -> Sequence[Candle]: ...


class StrategyEvaluator(Protocol):
    def evaluate(
        self,
        instrument: Instrument,
        view: CandleView,
        *,
        overrides: Mapping[str, Any],
    ) -> "Signal | Mapping[str, Any] | None": ...


class InstrumentLookup(Protocol):
    def get(self, instrument_id: InstrumentId) -> Optional[Instrument]: ...


__all__ = [
    "BAR_COLUMNS",
    "BacktestWindow",
    "Candle",
    "CandleFeed",
    "CandleView",
    "Direction",
    "EquityPoint",
    "ExitCheck",
    "ExitReason",
    "Instrument",
    "InstrumentId",
    "InstrumentLookup",
    "OptimizationMetric",
    "PositionSizingMethod",
    "RebalanceFrequency",
    "Signal",
    "SimulationTrial",
    "StrategyEvaluator",
    "Timeframe",
    "WindowType",
    "as_direction",
]
