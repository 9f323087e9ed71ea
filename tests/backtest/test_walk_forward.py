from __future__ import annotations

from datetime import date, timedelta

import pytest

from tradesim.backtest.models import Instrument, WindowType
from tradesim.backtest.walk_forward import (
    aggregate_period_results,
    consistency_score,
    degradation,
    generate_windows,
    increase,
    run_walk_forward,
)
from tradesim.core.exceptions import ConfigurationError

START = date(2024, 1, 1)


def _day(i: int) -> date:
    return START + timedelta(days=i)


def _period(index: int, total_return: float, **extra) -> dict:
    return {"window_index": index, "results": {"total_return": total_return, **extra}}


def test_rolling_windows_cover_the_range():
    windows = generate_windows(date(2024, 1, 1), date(2024, 12, 31))

    assert len(windows) == 3
    first = windows[0]
    assert first.in_sample_start == date(2024, 1, 1)
    assert first.in_sample_end == date(2024, 3, 31)
    assert first.out_of_sample_start == date(2024, 4, 1)
    assert first.out_of_sample_end == date(2024, 4, 30)
    assert windows[1].in_sample_start == date(2024, 4, 1)
    for window in windows:
        assert window.out_of_sample_start == window.in_sample_end + timedelta(days=1)
        assert window.out_of_sample_end <= date(2024, 12, 31)


def test_expanding_windows_pin_the_start():
    windows = generate_windows(
        date(2024, 1, 1), date(2024, 12, 31), window_type=WindowType.EXPANDING
    )
    assert len(windows) == 3
    assert {w.in_sample_start for w in windows} == {date(2024, 1, 1)}
    assert windows[-1].in_sample_end > windows[0].in_sample_end


def test_window_validation():
    with pytest.raises(ConfigurationError, match="Invalid window_type"):
        generate_windows(date(2024, 1, 1), date(2024, 12, 31), window_type="anchored")
    with pytest.raises(ConfigurationError):
        generate_windows(date(2024, 1, 1), date(2024, 12, 31), in_sample_days=0)
    assert generate_windows(date(2024, 1, 1), date(2024, 3, 1)) == []


@pytest.mark.parametrize(
    "is_return,oos_return,expected",
    [
        (10.0, 9.0, 100.0),
        (10.0, 4.0, 0.0),
        (10.0, 6.5, 50.0),
        (0.0, 0.0, 100.0),
        (0.0, -1.0, 0.0),
        (-10.0, -6.0, 0.0),
        (-10.0, -4.0, 100.0),
    ],
)
def test_consistency_score_per_window(is_return, oos_return, expected):
    score = consistency_score([_period(0, is_return)], [_period(0, oos_return)])
    assert score == pytest.approx(expected)


def test_consistency_score_pairs_by_window_index():
    in_sample = [_period(0, 10.0), _period(2, 10.0)]
    out_of_sample = [_period(2, 10.0), _period(0, 0.0)]
    assert consistency_score(in_sample, out_of_sample) == 50.0
    assert consistency_score([], []) == 0.0


def test_degradation_helpers():
    assert degradation(10.0, 5.0) == 50.0
    assert degradation(0.0, 5.0) == 0.0
    assert degradation(-10.0, -15.0) == 50.0
    assert increase(10.0, 15.0) == 50.0
    assert increase(None, 15.0) == 0.0


def test_aggregate_averages_and_sums():
    periods = [
        _period(0, 2.0, sharpe_ratio=1.0, total_trades=3),
        _period(1, 4.0, sharpe_ratio=2.0, total_trades=1),
    ]
    agg = aggregate_period_results(periods)
    assert agg["avg_total_return"] == 3.0
    assert agg["avg_sharpe_ratio"] == 1.5
    assert agg["total_trades"] == 4
    assert agg["avg_trades_per_period"] == 2.0
    assert agg["periods_count"] == 2
    assert aggregate_period_results([]) == {}


def _run(feed, evaluator, **kwargs):
    return run_walk_forward(
        [Instrument(1, "ACME")],
        _day(60),
        _day(299),
        feed=feed,
        evaluator=evaluator,
        **kwargs,
    )


def test_end_to_end_with_warmup(bars, feed_factory, always_long):
    feed = feed_factory({1: bars([100.0] * 300, START)})

    out = _run(feed, always_long(), warmup_days=60)

    assert out["success"] is True
    assert len(out["windows"]) == 2
    assert [r["window_index"] for r in out["out_of_sample_results"]] == [0, 1]
    assert out["out_of_sample_results"][0]["start_date"] == _day(151)
    assert out["aggregated"]["in_sample"]["total_trades"] == 2
    assert out["aggregated"]["out_of_sample"]["periods_count"] == 2
    assert out["comparison"]["consistency_score"] == 100.0
    assert out["comparison"]["return_degradation"] == 0.0


def test_parallel_windows_match_sequential(bars, feed_factory, walk, always_long):
    feed = feed_factory({1: bars(walk(300), START)})

    sequential = _run(feed, always_long(), warmup_days=60)
    parallel = _run(feed, always_long(), warmup_days=60, max_workers=2)

    assert parallel["in_sample_results"] == sequential["in_sample_results"]
    assert parallel["out_of_sample_results"] == sequential["out_of_sample_results"]
    assert parallel["comparison"] == sequential["comparison"]


def test_windows_without_enough_history_are_skipped(bars, feed_factory, always_long):
    feed = feed_factory({1: bars([100.0] * 300, START)})

    out = _run(feed, always_long())

    assert out["success"] is True
    assert len(out["windows"]) == 2
    assert out["out_of_sample_results"] == []
    assert out["aggregated"]["out_of_sample"] == {}
    assert out["comparison"]["consistency_score"] == 0.0


def test_no_windows_is_a_failed_result(flat_feed, always_long):
    out = run_walk_forward(
        [Instrument(1, "ACME")], _day(0), _day(60), feed=flat_feed, evaluator=always_long()
    )
    assert out == {"success": False, "error": "No valid windows generated"}
