# tradesim/backtest/metrics.py
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from tradesim.backtest.models import EquityPoint
from tradesim.backtest.position import Position

TRADING_DAYS = 252


# -------- Data classes --------
@dataclass
class TradeSummary:
    pnl: float
    pnl_pct: float
    holding_days: int


# -------- Internals --------
def _curve_from_points(points: Iterable[Any]) -> pd.Series:
    """Accepts EquityPoints, {date, equity} mappings or a DataFrame; one value per day."""
    if isinstance(points, pd.DataFrame):
        s = points["equity"].astype(float)
        s.index = pd.to_datetime(s.index)
        return s.groupby(level=0).last().sort_index()

    rows = []
    for p in points:
        if isinstance(p, EquityPoint):
            day, equity = p.date, p.equity
        else:
            day, equity = p.get("date"), p.get("equity")
        if day is None or equity is None:
            continue
        rows.append((pd.Timestamp(day), float(equity)))
    if not rows:
        return pd.Series(dtype=float)
    s = pd.Series([e for _, e in rows], index=pd.DatetimeIndex([d for d, _ in rows]))
    return s.groupby(level=0).last().sort_index()


def _curve_from_trades(positions: Sequence[Position], initial_capital: float) -> pd.Series:
    closed = [p for p in positions if p.exit_date is not None]
    if not closed:
        return pd.Series(dtype=float)
    closed.sort(key=lambda p: p.exit_date)
    equity = initial_capital + np.cumsum([p.calculate_pnl() for p in closed])
    s = pd.Series(equity, index=pd.DatetimeIndex([pd.Timestamp(p.exit_date) for p in closed]))
    return s.groupby(level=0).last()


def _to_returns(curve: pd.Series, base: float) -> pd.Series:
    if curve.empty:
        return pd.Series(dtype=float)
    s = pd.concat([pd.Series([base]), curve.reset_index(drop=True)], ignore_index=True)
    return (
        s.astype(float)
        .pct_change()
        .iloc[1:]
        .replace([np.inf, -np.inf], np.nan)
        .dropna()
        .astype(float)
    )


def _longest_streak(pnls: Iterable[float], predicate) -> int:
    best = run = 0
    for pnl in pnls:
        if predicate(pnl):
            run += 1
            best = max(best, run)
        else:
            run = 0
    return best


def _safe_div(num: float, den: float) -> float:
    return num / den if den else 0.0


# -------- Public API --------
class ResultAnalyzer:
    """
    Performance metrics over a finished run.

    Pure computation: the inputs are never mutated. When no equity curve is
    supplied, one is derived from the trade list (initial capital plus
    cumulative P&L in exit order). Every zero denominator resolves to 0.
    """

    def __init__(
        self,
        positions: Sequence[Position],
        initial_capital: float,
        final_capital: float,
        equity_curve: Optional[Iterable[Any]] = None,
    ):
        self.positions = list(positions)
        self.initial_capital = float(initial_capital)
        self.final_capital = float(final_capital)
        if equity_curve is not None:
            self.curve = _curve_from_points(equity_curve)
        else:
            self.curve = _curve_from_trades(self.positions, self.initial_capital)
        self._pnls = [float(p.calculate_pnl()) for p in self.positions]

    def analyze(self) -> Dict[str, Any]:
        best = self.best_trade()
        worst = self.worst_trade()
        results = {
            "total_return": self.total_return(),
            "annualized_return": self.annualized_return(),
            "max_drawdown": self.max_drawdown(),
            "sharpe_ratio": self.sharpe_ratio(),
            "sortino_ratio": self.sortino_ratio(),
            "win_rate": self.win_rate(),
            "avg_win_loss_ratio": self.avg_win_loss_ratio(),
            "profit_factor": self.profit_factor(),
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "avg_holding_period": self.avg_holding_period(),
            "best_trade": asdict(best) if best else None,
            "worst_trade": asdict(worst) if worst else None,
            "consecutive_wins": self.consecutive_wins(),
            "consecutive_losses": self.consecutive_losses(),
            "equity_curve": self.equity_curve_data(),
            "monthly_returns": self.monthly_returns(),
        }
        logger.debug(
            "[metrics] trades={} ret={} cagr={} sharpe={} sortino={} maxDD={} win={}",
            results["total_trades"],
            results["total_return"],
            results["annualized_return"],
            results["sharpe_ratio"],
            results["sortino_ratio"],
            results["max_drawdown"],
            results["win_rate"],
        )
        return results

    # -------- Returns --------
    def total_return(self) -> float:
        if self.initial_capital == 0:
            return 0.0
        return round((self.final_capital - self.initial_capital) / self.initial_capital * 100, 2)

    def trading_days(self) -> int:
        if not self.positions:
            return 0
        first = min(p.entry_date for p in self.positions)
        last = max(p.exit_date or p.entry_date for p in self.positions)
        return (last - first).days

    def annualized_return(self) -> float:
        if self.initial_capital == 0:
            return 0.0
        years = self.trading_days() / TRADING_DAYS
        if years <= 0:
            return 0.0
        ratio = self.final_capital / self.initial_capital
        if ratio <= 0:
            return -100.0
        return round((ratio ** (1.0 / years) - 1) * 100, 4)

    def period_returns(self) -> pd.Series:
        return _to_returns(self.curve, self.initial_capital)

    def monthly_returns(self) -> Dict[str, float]:
        if self.curve.empty or self.initial_capital == 0:
            return {}
        month_end = self.curve.groupby(self.curve.index.to_period("M")).last()
        prev = month_end.shift(1).fillna(self.initial_capital)
        pct = ((month_end / prev - 1.0) * 100).replace([np.inf, -np.inf], 0.0)
        return {str(period): round(float(v), 2) for period, v in pct.items()}

    # -------- Risk --------
    def max_drawdown(self) -> float:
        if self.curve.empty:
            return 0.0
        values = np.r_[self.initial_capital, self.curve.to_numpy(dtype=float)]
        peaks = np.maximum.accumulate(values)
        with np.errstate(divide="ignore", invalid="ignore"):
            dd = np.where(peaks > 0, (peaks - values) / peaks * 100, 0.0)
        return round(float(dd.max()), 2)

    def sharpe_ratio(self, risk_free_rate: float = 0.0) -> float:
        rets = self.period_returns()
        if rets.empty:
            return 0.0
        mean = float(rets.mean())
        std = float(rets.std(ddof=0))
        if std == 0:
            return 0.0
        return round((mean - risk_free_rate) / std * math.sqrt(TRADING_DAYS), 4)

    def sortino_ratio(self, risk_free_rate: float = 0.0) -> float:
        rets = self.period_returns()
        if rets.empty:
            return 0.0
        mean = float(rets.mean())
        neg = rets[rets < 0]
        if neg.empty:
            return 0.0
        downside = math.sqrt(float((neg**2).mean()))
        if downside == 0:
            return 0.0
        return round((mean - risk_free_rate) / downside * math.sqrt(TRADING_DAYS), 4)

    # -------- Trades --------
    @property
    def total_trades(self) -> int:
        return len(self.positions)

    @property
    def winning_trades(self) -> int:
        return sum(1 for pnl in self._pnls if pnl > 0)

    @property
    def losing_trades(self) -> int:
        return sum(1 for pnl in self._pnls if pnl < 0)

    def win_rate(self) -> float:
        return round(_safe_div(self.winning_trades, self.total_trades) * 100, 2)

    def profit_factor(self) -> float:
        gross_profit = sum(p for p in self._pnls if p > 0)
        gross_loss = abs(sum(p for p in self._pnls if p < 0))
        return round(_safe_div(gross_profit, gross_loss), 2)

    def avg_win_loss_ratio(self) -> float:
        wins = [p for p in self._pnls if p > 0]
        losses = [p for p in self._pnls if p < 0]
        if not wins or not losses:
            return 0.0
        avg_win = sum(wins) / len(wins)
        avg_loss = abs(sum(losses)) / len(losses)
        return round(_safe_div(avg_win, avg_loss), 2)

    def avg_holding_period(self) -> float:
        if not self.positions:
            return 0.0
        return round(sum(p.holding_days() for p in self.positions) / len(self.positions), 1)

    def consecutive_wins(self) -> int:
        return _longest_streak(self._pnls, lambda pnl: pnl > 0)

    def consecutive_losses(self) -> int:
        return _longest_streak(self._pnls, lambda pnl: pnl < 0)

    def _trade_summary(self, position: Position) -> TradeSummary:
        return TradeSummary(
            pnl=round(position.calculate_pnl(), 2),
            pnl_pct=round(position.calculate_pnl_pct(), 2),
            holding_days=position.holding_days(),
        )

    def best_trade(self) -> Optional[TradeSummary]:
        if not self.positions:
            return None
        return self._trade_summary(max(self.positions, key=lambda p: p.calculate_pnl()))

    def worst_trade(self) -> Optional[TradeSummary]:
        if not self.positions:
            return None
        return self._trade_summary(min(self.positions, key=lambda p: p.calculate_pnl()))

    def equity_curve_data(self) -> List[Dict[str, Any]]:
        return [
            {"date": ts.date(), "equity": round(float(v), 2)} for ts, v in self.curve.items()
        ]


__all__ = ["ResultAnalyzer", "TradeSummary", "TRADING_DAYS"]
