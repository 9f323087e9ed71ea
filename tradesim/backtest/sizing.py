"""Position sizing: turns a signal without a quantity into whole units to trade."""

from __future__ import annotations

import math

from loguru import logger

from tradesim.backtest.config import Config
from tradesim.backtest.models import PositionSizingMethod, Signal


def resolve_quantity(
    signal: Signal,
    config: Config,
    *,
    equity: float,
    slots: int = 1,
) -> int:
    """
    Computes the number of units for ``signal``.

    A positive ``signal.quantity`` always wins. Otherwise the Config's sizing
    method applies:

    * risk_based: risk amount / distance between entry and stop
    * fixed: risk amount / entry price
    * equal_weight: equity split across ``slots`` / entry price

    Args:
        signal (Signal): The entry decision.
        config (Config): Run parameters supplying risk amount and method.
        equity (float): Current portfolio equity.
        slots (int): Number of positions the equity is split across.

    Returns:
        int: Units to trade, 0 when the inputs cannot produce a size.
    """
    if signal.quantity > 0:
        return int(signal.quantity)

    entry = float(signal.entry_price)
    if entry <= 0:
        logger.warning("[sizing] non-positive entry price {}; size=0", entry)
        return 0

    method = config.position_sizing_method
    risk_amount = config.risk_amount_per_trade()
    if method is PositionSizingMethod.RISK_BASED:
        per_unit = abs(entry - float(signal.stop_loss))
        if per_unit <= 0:
            logger.debug("[sizing] stop equals entry; falling back to notional sizing")
            per_unit = entry
        raw = risk_amount / per_unit
    elif method is PositionSizingMethod.FIXED:
        raw = risk_amount / entry
    else:
        raw = (max(equity, 0.0) / max(int(slots), 1)) / entry

    return max(int(math.floor(raw)), 0)


__all__ = ["resolve_quantity"]
