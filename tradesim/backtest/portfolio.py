from __future__ import annotations

from datetime import date
from typing import Dict, List, Mapping, Optional

import pandas as pd
from loguru import logger

from tradesim.backtest.config import Config
from tradesim.backtest.models import (
    Direction,
    EquityPoint,
    ExitReason,
    InstrumentId,
    as_direction,
)
from tradesim.backtest.position import Position


class Portfolio:
    """
    Capital ledger, open-position registry and equity curve for one run.

    Only ``open_position``, ``close_position`` and ``update_equity_curve``
    mutate capital or the curve. A Portfolio belongs to a single simulation and
    must not be shared across concurrent runs.
    """

    def __init__(self, initial_capital: float, config: Optional[Config] = None):
        self.initial_capital: float = float(initial_capital)
        self.config: Config = config or Config(initial_capital=self.initial_capital)
        self.current_capital: float = self.initial_capital
        self.positions: Dict[InstrumentId, Position] = {}
        self.closed_positions: List[Position] = []
        self.equity_curve: List[EquityPoint] = [EquityPoint(None, self.initial_capital)]
        self.total_commission: float = 0.0
        self.total_slippage: float = 0.0

    @property
    def open_count(self) -> int:
        return len(self.positions)

    def has_position(self, instrument_id: InstrumentId) -> bool:
        return instrument_id in self.positions

    def open_position(
        self,
        instrument_id: InstrumentId,
        entry_date: date,
        entry_price: float,
        quantity: int,
        direction: Direction | str,
        stop_loss: float,
        take_profit: float,
        trailing_stop_pct: Optional[float] = None,
        trailing_stop_amount: Optional[float] = None,
    ) -> bool:
        """
        Open a position at a slippage-adjusted fill.

        Returns:
            bool: False (and no state change) when capital is insufficient, the
            quantity is not positive, or the instrument is already held.
        """
        if instrument_id in self.positions:
            logger.warning(
                "[portfolio] {} already has an open position; open ignored",
                instrument_id,
            )
            return False
        quantity = int(quantity)
        if quantity <= 0:
            return False

        direction = as_direction(direction)
        fill = self.config.apply_slippage(entry_price, direction)
        notional = fill * quantity
        commission = self.config.commission_fee(notional)
        if notional + commission > self.current_capital:
            logger.debug(
                "[portfolio] rejected {} qty={} cost={:.2f} capital={:.2f}",
                instrument_id,
                quantity,
                notional + commission,
                self.current_capital,
            )
            return False

        slippage = abs(fill - float(entry_price)) * quantity
        self.positions[instrument_id] = Position(
            instrument_id=instrument_id,
            entry_date=entry_date,
            entry_price=fill,
            quantity=quantity,
            direction=direction,
            stop_loss=stop_loss,
            take_profit=take_profit,
            trailing_stop_pct=trailing_stop_pct,
            trailing_stop_amount=trailing_stop_amount,
            entry_commission=commission,
            entry_slippage=slippage,
        )
        self.current_capital -= notional + commission
        self.total_commission += commission
        self.total_slippage += slippage
        return True

    def close_position(
        self,
        instrument_id: InstrumentId,
        exit_date: date,
        exit_price: float,
        exit_reason: ExitReason | str,
    ) -> Optional[Position]:
        """
        Close the open position for ``instrument_id``.

        The exit fill takes slippage with the opposite polarity of the entry
        (selling a long, covering a short).

        Returns:
            Position | None: The closed position, or None when nothing was open.
        """
        position = self.positions.pop(instrument_id, None)
        if position is None:
            return None

        fill = self.config.apply_slippage(exit_price, position.direction.opposite)
        commission = self.config.commission_fee(fill * position.quantity)
        position.close(exit_date=exit_date, exit_price=fill, exit_reason=exit_reason)
        position.exit_commission = commission
        position.exit_slippage = abs(fill - float(exit_price)) * position.quantity

        pnl = position.calculate_pnl()
        self.current_capital += position.entry_notional + pnl - commission
        self.total_commission += commission
        self.total_slippage += position.exit_slippage

        self.closed_positions.append(position)
        self.update_equity_curve(position.exit_date)
        return position

    def current_equity(self, current_prices: Optional[Mapping[InstrumentId, float]] = None) -> float:
        prices = current_prices or {}
        open_value = sum(
            pos.market_value(prices.get(iid)) for iid, pos in self.positions.items()
        )
        return self.current_capital + open_value

    def update_equity_curve(
        self,
        as_of: date,
        current_prices: Optional[Mapping[InstrumentId, float]] = None,
    ) -> float:
        equity = self.current_equity(current_prices)
        self.equity_curve.append(EquityPoint(as_of, equity))
        return equity

    def total_return(self) -> float:
        if self.initial_capital == 0:
            return 0.0
        return round((self.current_capital - self.initial_capital) / self.initial_capital * 100, 2)

    def equity_frame(self) -> pd.DataFrame:
        """Equity curve as a DataFrame indexed by date, keeping the last mark per day."""
        rows = [(p.date, p.equity) for p in self.equity_curve if p.date is not None]
        if not rows:
            return pd.DataFrame(columns=["equity"], index=pd.DatetimeIndex([], name="date"))
        frame = pd.DataFrame(rows, columns=["date", "equity"])
        frame["date"] = pd.to_datetime(frame["date"])
        return frame.groupby("date").last()


__all__ = ["Portfolio"]
