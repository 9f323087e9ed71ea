from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

from tradesim.backtest.models import (
    Direction,
    ExitCheck,
    ExitReason,
    InstrumentId,
    as_direction,
)
from tradesim.utils.datetime_utils import as_date


@dataclass(eq=False)
class Position:
    """
    A single simulated trade, open until ``close`` is called.

    ``entry_price`` is the slippage-adjusted fill. The trailing stop, when
    configured through ``trailing_stop_pct`` or ``trailing_stop_amount``, only
    ever moves in the position's favour.
    """

    instrument_id: InstrumentId
    entry_date: date
    entry_price: float
    quantity: int
    direction: Direction
    stop_loss: float
    take_profit: float
    trailing_stop_pct: Optional[float] = None
    trailing_stop_amount: Optional[float] = None
    entry_commission: float = 0.0
    entry_slippage: float = 0.0
    exit_date: Optional[date] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    exit_commission: float = 0.0
    exit_slippage: float = 0.0
    initial_stop_loss: float = field(init=False)
    highest_price: float = field(init=False)
    lowest_price: float = field(init=False)

    def __post_init__(self) -> None:
        self.entry_date = as_date(self.entry_date)
        self.entry_price = float(self.entry_price)
        self.quantity = int(self.quantity)
        self.direction = as_direction(self.direction)
        self.stop_loss = float(self.stop_loss)
        self.take_profit = float(self.take_profit)
        self.initial_stop_loss = self.stop_loss
        self.highest_price = self.entry_price
        self.lowest_price = self.entry_price

    # -------- Lifecycle --------
    def close(self, exit_date: date, exit_price: float, exit_reason: ExitReason | str) -> None:
        self.exit_date = as_date(exit_date)
        self.exit_price = float(exit_price)
        self.exit_reason = ExitReason(exit_reason)

    @property
    def is_closed(self) -> bool:
        return self.exit_date is not None

    @property
    def entry_notional(self) -> float:
        return self.entry_price * self.quantity

    # -------- Valuation --------
    def market_value(self, current_price: Optional[float] = None) -> float:
        """Entry notional plus unrealized P&L; entry price when no quote is given."""
        price = self.entry_price if current_price is None else float(current_price)
        return self.entry_notional + self.calculate_pnl(price)

    def calculate_pnl(self, current_price: Optional[float] = None) -> float:
        price = current_price if current_price is not None else self.exit_price
        if price is None:
            return 0.0
        if self.direction is Direction.LONG:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity

    def calculate_pnl_pct(self, current_price: Optional[float] = None) -> float:
        price = current_price if current_price is not None else self.exit_price
        if price is None or self.entry_price == 0:
            return 0.0
        if self.direction is Direction.LONG:
            return round((price - self.entry_price) / self.entry_price * 100, 4)
        return round((self.entry_price - price) / self.entry_price * 100, 4)

    def holding_days(self, as_of: Optional[date] = None) -> int:
        end = as_of or self.exit_date or date.today()
        return (as_date(end) - self.entry_date).days

    # -------- Exits --------
    @property
    def trailing_stop_enabled(self) -> bool:
        return self.trailing_stop_pct is not None or self.trailing_stop_amount is not None

    def update_trailing_stop(self, current_price: float) -> None:
        if not self.trailing_stop_enabled:
            return

        if self.direction is Direction.LONG:
            self.highest_price = max(self.highest_price, current_price)
            if self.trailing_stop_pct is not None:
                candidate = self.highest_price * (1 - self.trailing_stop_pct / 100.0)
            else:
                candidate = self.highest_price - self.trailing_stop_amount
            self.stop_loss = max(candidate, self.stop_loss)
        else:
            self.lowest_price = min(self.lowest_price, current_price)
            if self.trailing_stop_pct is not None:
                candidate = self.lowest_price * (1 + self.trailing_stop_pct / 100.0)
            else:
                candidate = self.lowest_price + self.trailing_stop_amount
            self.stop_loss = min(candidate, self.stop_loss)

    def _stop_reason(self) -> ExitReason:
        if self.stop_loss != self.initial_stop_loss:
            return ExitReason.TRAILING_STOP
        return ExitReason.STOP_LOSS

    def check_exit(self, current_price: float, current_date: date) -> Optional[ExitCheck]:
        """
        Evaluate stop and target against ``current_price``.

        Returns:
            ExitCheck | None: Exit level and reason, or None while the trade stays open.
        """
        if self.is_closed:
            return None

        current_price = float(current_price)
        self.update_trailing_stop(current_price)

        if self.direction is Direction.LONG:
            if current_price <= self.stop_loss:
                return ExitCheck(self.stop_loss, self._stop_reason())
            if current_price >= self.take_profit:
                return ExitCheck(self.take_profit, ExitReason.TAKE_PROFIT)
        else:
            if current_price >= self.stop_loss:
                return ExitCheck(self.stop_loss, self._stop_reason())
            if current_price <= self.take_profit:
                return ExitCheck(self.take_profit, ExitReason.TAKE_PROFIT)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "direction": self.direction.value,
            "entry_date": self.entry_date,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "stop_loss": self.stop_loss,
            "initial_stop_loss": self.initial_stop_loss,
            "take_profit": self.take_profit,
            "exit_date": self.exit_date,
            "exit_price": self.exit_price,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "pnl": round(self.calculate_pnl(), 2),
            "pnl_pct": self.calculate_pnl_pct(),
            "holding_days": self.holding_days() if self.is_closed else None,
            "commission": round(self.entry_commission + self.exit_commission, 2),
            "slippage": round(self.entry_slippage + self.exit_slippage, 2),
        }


__all__ = ["Position"]
