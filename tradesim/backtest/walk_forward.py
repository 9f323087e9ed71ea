from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from loguru import logger

from tradesim.backtest.config import Config
from tradesim.backtest.engine import resolve_instruments, run_backtest
from tradesim.backtest.models import (
    BacktestWindow,
    CandleFeed,
    Instrument,
    InstrumentId,
    InstrumentLookup,
    StrategyEvaluator,
    WindowType,
)
from tradesim.core.exceptions import ConfigurationError
from tradesim.utils.datetime_utils import as_date

DEFAULT_IN_SAMPLE_DAYS = 90
DEFAULT_OUT_OF_SAMPLE_DAYS = 30

_AVERAGED = (
    "total_return",
    "annualized_return",
    "max_drawdown",
    "sharpe_ratio",
    "sortino_ratio",
    "win_rate",
    "profit_factor",
)


def generate_windows(
    from_date: date,
    to_date: date,
    *,
    in_sample_days: int = DEFAULT_IN_SAMPLE_DAYS,
    out_of_sample_days: int = DEFAULT_OUT_OF_SAMPLE_DAYS,
    window_type: WindowType | str = WindowType.ROLLING,
) -> List[BacktestWindow]:
    """
    Split ``[from_date, to_date]`` into in-sample / out-of-sample pairs.

    Rolling windows slide the in-sample start forward by one out-of-sample
    period each step; expanding windows keep it pinned at ``from_date``.
    Generation stops as soon as an out-of-sample period would end after
    ``to_date``.
    """
    window_type = _as_window_type(window_type)
    from_date, to_date = as_date(from_date), as_date(to_date)
    if in_sample_days <= 0 or out_of_sample_days <= 0:
        raise ConfigurationError("Window lengths must be positive")

    windows: List[BacktestWindow] = []
    cursor = from_date
    while cursor < to_date:
        in_sample_end = cursor + timedelta(days=in_sample_days)
        oos_start = in_sample_end + timedelta(days=1)
        oos_end = oos_start + timedelta(days=out_of_sample_days - 1)
        if oos_end > to_date:
            break
        in_sample_start = from_date if window_type is WindowType.EXPANDING else cursor
        windows.append(BacktestWindow(in_sample_start, in_sample_end, oos_start, oos_end))
        cursor = oos_start
    return windows


def _as_window_type(value: WindowType | str) -> WindowType:
    try:
        return WindowType(getattr(value, "value", value))
    except ValueError as exc:
        allowed = ", ".join(w.value for w in WindowType)
        raise ConfigurationError(
            f"Invalid window_type: {value}. Must be one of: {allowed}"
        ) from exc


def _average(period_results: Sequence[Mapping[str, Any]], key: str) -> float:
    values = [r["results"].get(key) for r in period_results]
    values = [float(v) for v in values if v is not None]
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def aggregate_period_results(period_results: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    if not period_results:
        return {}
    out: Dict[str, Any] = {f"avg_{key}": _average(period_results, key) for key in _AVERAGED}
    out["total_trades"] = sum(int(r["results"].get("total_trades") or 0) for r in period_results)
    out["avg_trades_per_period"] = _average(period_results, "total_trades")
    out["periods_count"] = len(period_results)
    return out


def degradation(in_sample: Optional[float], out_of_sample: Optional[float]) -> float:
    """Percent drop from in-sample to out-of-sample, relative to |in-sample|."""
    if not in_sample or out_of_sample is None:
        return 0.0
    return round((in_sample - out_of_sample) / abs(in_sample) * 100, 2)


def increase(in_sample: Optional[float], out_of_sample: Optional[float]) -> float:
    if not in_sample or out_of_sample is None:
        return 0.0
    return round((out_of_sample - in_sample) / abs(in_sample) * 100, 2)


def consistency_score(
    in_sample_results: Sequence[Mapping[str, Any]],
    out_of_sample_results: Sequence[Mapping[str, Any]],
) -> float:
    """
    0-100 agreement between paired in-sample and out-of-sample returns.

    A window scores 0 when OOS return is below half the IS return, 100 when it
    reaches 80% of it, and is interpolated linearly in between.
    """
    oos_by_window = {r["window_index"]: r for r in out_of_sample_results}
    scores: List[float] = []
    for is_result in in_sample_results:
        oos_result = oos_by_window.get(is_result["window_index"])
        if oos_result is None:
            continue
        is_return = float(is_result["results"].get("total_return") or 0)
        oos_return = float(oos_result["results"].get("total_return") or 0)
        if oos_return < is_return * 0.5:
            scores.append(0.0)
        elif oos_return >= is_return * 0.8:
            scores.append(100.0)
        else:
            # only reachable with a positive in-sample return
            ratio = (oos_return - is_return * 0.5) / (is_return * 0.3)
            scores.append(min(max(ratio * 100, 0.0), 100.0))
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 2)


def compare_periods(
    in_sample_results: Sequence[Mapping[str, Any]],
    out_of_sample_results: Sequence[Mapping[str, Any]],
) -> Dict[str, float]:
    is_agg = aggregate_period_results(in_sample_results)
    oos_agg = aggregate_period_results(out_of_sample_results)
    return {
        "return_degradation": degradation(
            is_agg.get("avg_total_return"), oos_agg.get("avg_total_return")
        ),
        "sharpe_degradation": degradation(
            is_agg.get("avg_sharpe_ratio"), oos_agg.get("avg_sharpe_ratio")
        ),
        "drawdown_increase": increase(
            is_agg.get("avg_max_drawdown"), oos_agg.get("avg_max_drawdown")
        ),
        "win_rate_degradation": degradation(
            is_agg.get("avg_win_rate"), oos_agg.get("avg_win_rate")
        ),
        "profit_factor_degradation": degradation(
            is_agg.get("avg_profit_factor"), oos_agg.get("avg_profit_factor")
        ),
        "consistency_score": consistency_score(in_sample_results, out_of_sample_results),
    }


class WalkForward:
    """
    In-sample / out-of-sample validation over successive windows.

    Every window runs two independent backtests with fresh capital. Windows
    can be spread over a thread pool with ``max_workers``; the evaluator and
    feed must then be safe to call from several threads.
    """

    def __init__(
        self,
        instruments: Iterable[Instrument | InstrumentId],
        from_date: date,
        to_date: date,
        config: Optional[Config] = None,
        *,
        feed: CandleFeed,
        evaluator: StrategyEvaluator,
        lookup: Optional[InstrumentLookup] = None,
        window_type: WindowType | str = WindowType.ROLLING,
        in_sample_days: int = DEFAULT_IN_SAMPLE_DAYS,
        out_of_sample_days: int = DEFAULT_OUT_OF_SAMPLE_DAYS,
        variant: str = "swing",
        max_workers: Optional[int] = None,
        backtest_options: Optional[Mapping[str, Any]] = None,
    ):
        self.config = config or Config()
        self.instruments = resolve_instruments(instruments, lookup, self.config.instrument_universe)
        self.from_date = as_date(from_date)
        self.to_date = as_date(to_date)
        self.window_type = _as_window_type(window_type)
        self.in_sample_days = int(in_sample_days)
        self.out_of_sample_days = int(out_of_sample_days)
        self.feed = feed
        self.evaluator = evaluator
        self.variant = variant
        self.max_workers = max_workers
        self.backtest_options = dict(backtest_options or {})

    def generate_windows(self) -> List[BacktestWindow]:
        return generate_windows(
            self.from_date,
            self.to_date,
            in_sample_days=self.in_sample_days,
            out_of_sample_days=self.out_of_sample_days,
            window_type=self.window_type,
        )

    def _backtest(self, start: date, end: date) -> Dict[str, Any]:
        return run_backtest(
            self.instruments,
            start,
            end,
            self.config,
            feed=self.feed,
            evaluator=self.evaluator,
            variant=self.variant,
            **self.backtest_options,
        )

    def _run_window(self, index: int, window: BacktestWindow) -> Optional[Dict[str, Any]]:
        in_sample = self._backtest(window.in_sample_start, window.in_sample_end)
        if not in_sample.get("success"):
            logger.info("[walk_forward] window {} in-sample failed: {}", index, in_sample.get("error"))
            return None
        out_of_sample = self._backtest(window.out_of_sample_start, window.out_of_sample_end)
        if not out_of_sample.get("success"):
            logger.info(
                "[walk_forward] window {} out-of-sample failed: {}",
                index,
                out_of_sample.get("error"),
            )
            return None
        return {
            "window_index": index,
            "window": window,
            "in_sample": in_sample["results"],
            "out_of_sample": out_of_sample["results"],
        }

    def run(self) -> Dict[str, Any]:
        windows = self.generate_windows()
        if not windows:
            return {"success": False, "error": "No valid windows generated"}

        logger.info(
            "[walk_forward] {} {} windows IS={}d OOS={}d",
            len(windows),
            self.window_type.value,
            self.in_sample_days,
            self.out_of_sample_days,
        )
        if self.max_workers and self.max_workers > 1 and len(windows) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                outcomes = list(
                    executor.map(self._run_window, range(len(windows)), windows)
                )
        else:
            outcomes = [self._run_window(i, w) for i, w in enumerate(windows)]

        in_sample_results: List[Dict[str, Any]] = []
        out_of_sample_results: List[Dict[str, Any]] = []
        for outcome in outcomes:
            if outcome is None:
                continue
            window: BacktestWindow = outcome["window"]
            in_sample_results.append(
                {
                    "window_index": outcome["window_index"],
                    "start_date": window.in_sample_start,
                    "end_date": window.in_sample_end,
                    "results": outcome["in_sample"],
                }
            )
            out_of_sample_results.append(
                {
                    "window_index": outcome["window_index"],
                    "start_date": window.out_of_sample_start,
                    "end_date": window.out_of_sample_end,
                    "results": outcome["out_of_sample"],
                }
            )

        comparison = compare_periods(in_sample_results, out_of_sample_results)
        logger.info(
            "[walk_forward] completed {}/{} windows consistency={}",
            len(out_of_sample_results),
            len(windows),
            comparison["consistency_score"],
        )
        return {
            "success": True,
            "windows": [w.as_dict() for w in windows],
            "in_sample_results": in_sample_results,
            "out_of_sample_results": out_of_sample_results,
            "aggregated": {
                "in_sample": aggregate_period_results(in_sample_results),
                "out_of_sample": aggregate_period_results(out_of_sample_results),
            },
            "comparison": comparison,
        }


def run_walk_forward(
    instruments: Iterable[Instrument | InstrumentId],
    from_date: date,
    to_date: date,
    config: Optional[Config] = None,
    *,
    feed: CandleFeed,
    evaluator: StrategyEvaluator,
    lookup: Optional[InstrumentLookup] = None,
    window_type: WindowType | str = WindowType.ROLLING,
    in_sample_days: int = DEFAULT_IN_SAMPLE_DAYS,
    out_of_sample_days: int = DEFAULT_OUT_OF_SAMPLE_DAYS,
    variant: str = "swing",
    max_workers: Optional[int] = None,
    **backtest_options: Any,
) -> Dict[str, Any]:
    return WalkForward(
        instruments,
        from_date,
        to_date,
        config,
        feed=feed,
        evaluator=evaluator,
        lookup=lookup,
        window_type=window_type,
        in_sample_days=in_sample_days,
        out_of_sample_days=out_of_sample_days,
        variant=variant,
        max_workers=max_workers,
        backtest_options=backtest_options,
    ).run()


__all__ = [
    "WalkForward",
    "aggregate_period_results",
    "compare_periods",
    "consistency_score",
    "generate_windows",
    "run_walk_forward",
]
