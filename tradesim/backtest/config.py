from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from tradesim.backtest.models import (
    Direction,
    InstrumentId,
    PositionSizingMethod,
    as_direction,
)
from tradesim.core.exceptions import ConfigurationError
from tradesim.utils.datetime_utils import as_date

DEFAULT_INITIAL_CAPITAL = 100_000.0
DEFAULT_RISK_PER_TRADE = 2.0  # % of capital per trade
DEFAULT_COMMISSION_RATE = 0.0
DEFAULT_SLIPPAGE_PCT = 0.0
DEFAULT_LOOKBACK_DAYS = 365

MIN_RISK_PER_TRADE = 0.1
MAX_RISK_PER_TRADE = 10.0


def _coerce_sizing(value: Any) -> Any:
    if isinstance(value, PositionSizingMethod):
        return value
    try:
        return PositionSizingMethod(str(value).strip().lower())
    except ValueError:
        # left raw so validate() can report it alongside other errors
        return value


@dataclass(frozen=True)
class Config:
    """
    Immutable parameters for one backtest run plus the trade-cost model.

    Attributes:
        initial_capital (float): Starting cash.
        risk_per_trade (float): Percent of initial capital risked per trade.
        commission_rate (float): Commission as a percent of traded notional.
        slippage_pct (float): Adverse fill adjustment as a percent of price.
        position_sizing_method (PositionSizingMethod): How signals without a size are sized.
        from_date (date): First simulated day (defaults to one year before to_date).
        to_date (date): Last simulated day (defaults to today).
        instrument_universe (tuple): Instrument ids the run is restricted to (empty = all).
        strategy_overrides (Mapping): Parameters forwarded to the strategy evaluator.
    """

    initial_capital: float = DEFAULT_INITIAL_CAPITAL
    risk_per_trade: float = DEFAULT_RISK_PER_TRADE
    commission_rate: float = DEFAULT_COMMISSION_RATE
    slippage_pct: float = DEFAULT_SLIPPAGE_PCT
    position_sizing_method: PositionSizingMethod = PositionSizingMethod.RISK_BASED
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    instrument_universe: Tuple[InstrumentId, ...] = ()
    strategy_overrides: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors: List[str] = []
        for name in ("initial_capital", "risk_per_trade", "commission_rate", "slippage_pct"):
            raw = getattr(self, name)
            try:
                object.__setattr__(self, name, float(raw))
            except (TypeError, ValueError):
                errors.append(f"{name} must be numeric (got {raw!r})")

        object.__setattr__(
            self, "position_sizing_method", _coerce_sizing(self.position_sizing_method)
        )
        to_date = as_date(self.to_date) if self.to_date is not None else date.today()
        from_date = (
            as_date(self.from_date)
            if self.from_date is not None
            else to_date - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        )
        object.__setattr__(self, "to_date", to_date)
        object.__setattr__(self, "from_date", from_date)
        object.__setattr__(self, "instrument_universe", tuple(self.instrument_universe or ()))
        object.__setattr__(self, "strategy_overrides", dict(self.strategy_overrides or {}))
        errors.extend(self._violations())
        if errors:
            raise ConfigurationError(errors)

    # -------- Construction helpers --------
    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Config":
        """Build from a plain mapping; ``None`` values fall back to defaults."""
        kwargs: Dict[str, Any] = {}
        date_range = data.get("date_range") or {}
        for f in dataclasses.fields(cls):
            value = data.get(f.name)
            if value is None and f.name in ("from_date", "to_date"):
                value = date_range.get(f.name)
            if value is not None:
                kwargs[f.name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_capital": self.initial_capital,
            "risk_per_trade": self.risk_per_trade,
            "commission_rate": self.commission_rate,
            "slippage_pct": self.slippage_pct,
            "position_sizing_method": getattr(
                self.position_sizing_method, "value", self.position_sizing_method
            ),
            "date_range": self.date_range,
            "instrument_universe": list(self.instrument_universe),
            "strategy_overrides": dict(self.strategy_overrides),
        }

    def replace(self, **changes: Any) -> "Config":
        """Return a validated copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    @property
    def date_range(self) -> Dict[str, date]:
        return {"from_date": self.from_date, "to_date": self.to_date}

    # -------- Cost model --------
    def risk_amount_per_trade(self) -> float:
        return round(self.initial_capital * self.risk_per_trade / 100.0, 2)

    def apply_slippage(self, price: float, direction: Direction | str) -> float:
        """
        Worsen a fill by ``slippage_pct``.

        ``direction`` is the polarity of the action: ``long`` buys (price goes up),
        ``short`` sells (price goes down).
        """
        price = float(price)
        if self.slippage_pct == 0:
            return price
        slippage = price * self.slippage_pct / 100.0
        if as_direction(direction) is Direction.LONG:
            return price + slippage
        return price - slippage

    def apply_commission(self, amount: float) -> float:
        """Gross up ``amount`` by the commission rate."""
        if self.commission_rate == 0:
            return float(amount)
        return float(amount) * (1 + self.commission_rate / 100.0)

    def commission_fee(self, amount: float) -> float:
        """Commission charged on a traded notional of ``amount``."""
        return float(amount) * self.commission_rate / 100.0

    def _violations(self) -> List[str]:
        # fields that failed numeric coercion were already reported
        def number(name: str) -> Optional[float]:
            value = getattr(self, name)
            return value if isinstance(value, float) else None

        errors: List[str] = []
        capital = number("initial_capital")
        if capital is not None and capital <= 0:
            errors.append("Initial capital must be positive")
        risk = number("risk_per_trade")
        if risk is not None and not MIN_RISK_PER_TRADE <= risk <= MAX_RISK_PER_TRADE:
            errors.append("Risk per trade must be between 0.1 and 10%")
        commission = number("commission_rate")
        if commission is not None and commission < 0:
            errors.append("Commission rate must be non-negative")
        slippage = number("slippage_pct")
        if slippage is not None and slippage < 0:
            errors.append("Slippage must be non-negative")
        if not isinstance(self.position_sizing_method, PositionSizingMethod):
            errors.append("Invalid position sizing method")
        if self.from_date >= self.to_date:
            errors.append("Invalid date range")
        return errors

    def validate(self) -> bool:
        errors = self._violations()
        if errors:
            raise ConfigurationError(errors)
        return True


__all__ = [
    "Config",
    "DEFAULT_INITIAL_CAPITAL",
    "DEFAULT_RISK_PER_TRADE",
    "DEFAULT_COMMISSION_RATE",
    "DEFAULT_SLIPPAGE_PCT",
]
