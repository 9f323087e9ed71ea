from __future__ import annotations

import math
from datetime import date, timedelta

import pytest

from tradesim.backtest.models import Direction, ExitReason
from tradesim.backtest.monte_carlo import MonteCarlo, percentile, run_monte_carlo
from tradesim.backtest.position import Position

PNLS = [500.0, -200.0, 300.0, -800.0, 1_200.0, -100.0, 400.0, -600.0]


def _closed(pnl: float) -> Position:
    day = date(2024, 3, 1)
    pos = Position(
        instrument_id=1,
        entry_date=day,
        entry_price=100.0,
        quantity=10,
        direction=Direction.LONG,
        stop_loss=50.0,
        take_profit=200.0,
    )
    pos.close(day + timedelta(days=5), 100.0 + pnl / 10, ExitReason.TAKE_PROFIT)
    return pos


def test_empty_input_is_a_failed_result():
    assert run_monte_carlo([], 10_000) == {"success": False, "error": "No positions provided"}


def test_percentile_picks_order_statistics():
    values = [1.0, 2.0, 3.0, 4.0, 5.0]
    assert percentile(values, 0.25) == 2.0
    assert percentile(values, 0.50) == 3.0
    assert percentile(values, 0.75) == 4.0
    assert percentile(values, 1.0) == 5.0
    assert percentile([], 0.5) is None


def test_every_trial_ends_at_the_same_capital():
    mc = MonteCarlo([_closed(p) for p in PNLS], 10_000, simulations=200, seed=7)
    out = mc.run()

    assert out["success"] is True
    assert len(mc.trials) == 200
    expected_final = 10_000 + sum(PNLS)
    for trial in mc.trials:
        assert trial.total_pnl == pytest.approx(sum(PNLS))
        assert trial.final_capital == pytest.approx(expected_final)
        assert trial.total_trades == len(PNLS)
        assert trial.winning_trades == 4
        assert trial.win_rate == 50.0

    summary = out["results"]
    assert summary["std_dev_final_capital"] == 0.0
    assert summary["mean_total_return"] == pytest.approx(sum(PNLS) / 100)
    assert summary["min_max_drawdown"] <= summary["mean_max_drawdown"] <= summary["max_max_drawdown"]


def test_seed_makes_runs_reproducible():
    first = MonteCarlo(PNLS, 10_000, simulations=50, seed=42)
    second = MonteCarlo(PNLS, 10_000, simulations=50, seed=42)
    first.run()
    second.run()
    assert [t.max_drawdown for t in first.trials] == [t.max_drawdown for t in second.trials]
    assert len({t.max_drawdown for t in first.trials}) > 1


def test_confidence_intervals_are_ordered():
    out = run_monte_carlo(PNLS, 10_000, simulations=300, seed=3)
    intervals = out["confidence_intervals"]
    assert set(intervals) == {0.90, 0.95, 0.99}
    for level in intervals.values():
        dd = level["max_drawdown"]
        assert dd["lower"] <= dd["upper"]
        assert dd["range"] == pytest.approx(dd["upper"] - dd["lower"], abs=0.01)

    dist = out["probability_distributions"]["drawdowns"]
    assert dist["min"] <= dist["q25"] <= dist["median"] <= dist["q75"] <= dist["max"]


def test_all_losing_trades_always_lose():
    out = run_monte_carlo([-100.0, -50.0, -25.0], 1_000, simulations=20, seed=1)
    worst = out["worst_case_scenarios"]
    assert worst["probability_of_loss"] == 100.0
    assert worst["probability_of_large_drawdown"] == 0.0
    assert worst["worst_5_percent"]["count"] == math.ceil(20 * 0.05)
    assert worst["worst_5_percent"]["worst_return"] == pytest.approx(-17.5)
    # every ordering has the same path end, the drawdown is the full loss
    assert worst["worst_5_percent"]["worst_drawdown"] == pytest.approx(17.5)


def test_accepts_trade_mappings():
    out = run_monte_carlo([{"pnl": 100.0}, {"pnl": -50.0}, {"pnl": None}], 1_000, simulations=5, seed=0)
    assert out["results"]["mean_final_capital"] == 1_050.0
    assert out["simulations"] == 5
    assert out["initial_capital"] == 1_000.0
