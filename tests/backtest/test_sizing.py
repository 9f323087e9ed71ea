from __future__ import annotations

from tradesim.backtest.config import Config
from tradesim.backtest.models import Direction, Signal
from tradesim.backtest.sizing import resolve_quantity


def _signal(**kwargs) -> Signal:
    params = dict(direction=Direction.LONG, entry_price=100.0, stop_loss=90.0, take_profit=130.0)
    params.update(kwargs)
    return Signal(**params)


def test_explicit_quantity_wins():
    assert resolve_quantity(_signal(quantity=7), Config(), equity=100_000) == 7


def test_risk_based_divides_by_stop_distance():
    cfg = Config(initial_capital=100_000, risk_per_trade=2.0)
    assert resolve_quantity(_signal(), cfg, equity=100_000) == 200


def test_risk_based_falls_back_to_notional_when_stop_equals_entry():
    cfg = Config(initial_capital=100_000, risk_per_trade=2.0)
    assert resolve_quantity(_signal(stop_loss=100.0), cfg, equity=100_000) == 20


def test_fixed_sizing():
    cfg = Config(initial_capital=100_000, risk_per_trade=1.0, position_sizing_method="fixed")
    assert resolve_quantity(_signal(entry_price=33.0), cfg, equity=100_000) == 30


def test_equal_weight_splits_equity():
    cfg = Config(position_sizing_method="equal_weight")
    assert resolve_quantity(_signal(), cfg, equity=50_000, slots=4) == 125


def test_non_positive_entry_gives_zero():
    assert resolve_quantity(_signal(entry_price=0.0), Config(), equity=100_000) == 0
