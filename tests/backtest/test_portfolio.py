from __future__ import annotations

from datetime import date

import pytest

from tradesim.backtest.config import Config
from tradesim.backtest.models import Direction, ExitReason
from tradesim.backtest.portfolio import Portfolio

D0 = date(2024, 1, 2)
D1 = date(2024, 1, 10)


def _open(portfolio: Portfolio, direction=Direction.LONG, price=100.0, qty=10, iid=1) -> bool:
    stop, target = (90.0, 120.0) if direction is Direction.LONG else (110.0, 80.0)
    return portfolio.open_position(iid, D0, price, qty, direction, stop, target)


def test_zero_cost_round_trip_leaves_capital_unchanged():
    portfolio = Portfolio(100_000)
    assert _open(portfolio)
    assert portfolio.current_capital == pytest.approx(99_000.0)

    closed = portfolio.close_position(1, D0, 100.0, ExitReason.END_OF_BACKTEST)
    assert closed is not None
    assert portfolio.current_capital == pytest.approx(100_000.0)
    assert portfolio.positions == {}
    assert portfolio.closed_positions == [closed]


def test_close_unknown_instrument_changes_nothing():
    portfolio = Portfolio(100_000)
    curve_before = list(portfolio.equity_curve)
    assert portfolio.close_position(42, D1, 100.0, ExitReason.STOP_LOSS) is None
    assert portfolio.current_capital == 100_000
    assert portfolio.equity_curve == curve_before


def test_rejects_when_capital_is_insufficient():
    portfolio = Portfolio(500)
    assert not _open(portfolio)
    assert portfolio.current_capital == 500
    assert portfolio.open_count == 0


def test_rejects_duplicate_and_non_positive_quantity():
    portfolio = Portfolio(100_000)
    assert _open(portfolio)
    assert not _open(portfolio, price=50.0)
    assert portfolio.positions[1].entry_price == 100.0
    assert not _open(portfolio, qty=0, iid=2)
    assert portfolio.open_count == 1


def test_slippage_applies_against_the_trade_on_both_legs():
    portfolio = Portfolio(100_000, Config(initial_capital=100_000, slippage_pct=1.0))
    assert _open(portfolio)
    assert portfolio.positions[1].entry_price == pytest.approx(101.0)

    closed = portfolio.close_position(1, D1, 110.0, ExitReason.TAKE_PROFIT)
    assert closed.exit_price == pytest.approx(108.9)
    assert closed.calculate_pnl() == pytest.approx(79.0)
    assert portfolio.current_capital == pytest.approx(100_079.0)
    assert portfolio.total_slippage == pytest.approx(10.0 + 11.0)


def test_short_slippage_and_pnl():
    portfolio = Portfolio(100_000, Config(initial_capital=100_000, slippage_pct=1.0))
    assert _open(portfolio, direction=Direction.SHORT)
    assert portfolio.positions[1].entry_price == pytest.approx(99.0)

    closed = portfolio.close_position(1, D1, 90.0, ExitReason.TAKE_PROFIT)
    assert closed.exit_price == pytest.approx(90.9)
    assert closed.calculate_pnl() == pytest.approx(81.0)


def test_commission_is_charged_per_leg():
    portfolio = Portfolio(100_000, Config(initial_capital=100_000, commission_rate=0.1))
    assert _open(portfolio)
    assert portfolio.current_capital == pytest.approx(100_000 - 1_001.0)

    portfolio.close_position(1, D1, 100.0, ExitReason.END_OF_BACKTEST)
    assert portfolio.total_commission == pytest.approx(2.0)
    assert portfolio.current_capital == pytest.approx(99_998.0)


def test_equity_marks_open_positions():
    portfolio = Portfolio(100_000)
    _open(portfolio)
    assert portfolio.current_equity() == pytest.approx(100_000.0)
    assert portfolio.update_equity_curve(D1, {1: 110.0}) == pytest.approx(100_100.0)
    assert portfolio.equity_curve[-1].date == D1


def test_equity_frame_keeps_last_point_per_day():
    portfolio = Portfolio(100_000)
    portfolio.update_equity_curve(D0)
    _open(portfolio)
    portfolio.update_equity_curve(D0, {1: 105.0})
    frame = portfolio.equity_frame()
    assert len(frame) == 1
    assert frame["equity"].iloc[0] == pytest.approx(100_050.0)


def test_total_return_uses_realized_capital():
    portfolio = Portfolio(100_000)
    _open(portfolio)
    portfolio.close_position(1, D1, 120.0, ExitReason.TAKE_PROFIT)
    assert portfolio.total_return() == 0.2
