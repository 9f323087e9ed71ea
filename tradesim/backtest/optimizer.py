from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import yaml
from loguru import logger

from tradesim.backtest.config import Config
from tradesim.backtest.engine import resolve_instruments, run_backtest
from tradesim.backtest.models import (
    CandleFeed,
    Instrument,
    InstrumentId,
    InstrumentLookup,
    OptimizationMetric,
    StrategyEvaluator,
    WindowType,
)
from tradesim.backtest.walk_forward import (
    DEFAULT_IN_SAMPLE_DAYS,
    DEFAULT_OUT_OF_SAMPLE_DAYS,
    run_walk_forward,
)
from tradesim.core.exceptions import ConfigurationError

CONFIG_PARAMETERS = frozenset(
    {
        "initial_capital",
        "risk_per_trade",
        "commission_rate",
        "slippage_pct",
        "position_sizing_method",
    }
)
DRIVER_PARAMETERS = frozenset(
    {
        "trailing_stop_pct",
        "trailing_stop_amount",
        "max_positions",
        "min_holding_days",
        "rebalance_frequency",
        "warmup_days",
    }
)

COMPOSITE_WEIGHTS = {
    "sharpe_ratio": 0.4,
    "total_return": 0.2,
    "win_rate": 0.2,
    "profit_factor": 0.2,
}

_OOS_METRICS = (
    "total_return",
    "annualized_return",
    "max_drawdown",
    "sharpe_ratio",
    "sortino_ratio",
    "win_rate",
    "profit_factor",
)


@dataclass(frozen=True)
class ParameterRange:
    """Inclusive numeric range: ``start, start + step, ...`` up to ``stop``."""

    start: float
    stop: float
    step: float = 1.0

    def __post_init__(self) -> None:
        if self.step <= 0:
            raise ConfigurationError(f"ParameterRange step must be positive (got {self.step})")
        if self.stop < self.start:
            raise ConfigurationError("ParameterRange stop must not precede start")

    def values(self) -> List[float]:
        count = int(np.floor((self.stop - self.start) / self.step + 1e-9)) + 1
        return [round(self.start + i * self.step, 10) for i in range(count)]

    def __iter__(self):
        return iter(self.values())


def _as_values(spec: Any) -> List[Any]:
    if isinstance(spec, ParameterRange):
        return spec.values()
    if isinstance(spec, np.ndarray):
        return spec.tolist()
    if isinstance(spec, (list, tuple, range)):
        return list(spec)
    return [spec]


def expand_parameter_grid(ranges: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Cartesian product of all ranges in key order; scalars are singletons."""
    if not ranges:
        return [{}]
    keys = list(ranges.keys())
    combos = []
    for values in itertools.product(*(_as_values(ranges[k]) for k in keys)):
        combos.append(dict(zip(keys, values, strict=True)))
    return combos


def load_parameter_ranges(path: Path | str) -> Dict[str, Any]:
    """
    Read a YAML parameter grid.

    Values may be lists, scalars or ``{start, stop, step}`` mappings, e.g.::

        risk_per_trade: [1.0, 2.0]
        trailing_stop_pct: {start: 5, stop: 15, step: 5}
        rsi_period: 14
    """
    data = yaml.safe_load(Path(path).read_text())
    if not isinstance(data, dict):
        raise ConfigurationError("Parameter grid must be a mapping")
    ranges: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            try:
                ranges[key] = ParameterRange(
                    float(value["start"]), float(value["stop"]), float(value.get("step", 1.0))
                )
            except KeyError as exc:
                raise ConfigurationError(f"{key}: range is missing {exc}") from exc
        else:
            ranges[key] = value
    return ranges


def apply_parameters(
    config: Config, params: Mapping[str, Any]
) -> Tuple[Config, Dict[str, Any]]:
    """
    Route one combination: Config fields replace the Config, driver options
    are returned separately and everything else becomes a strategy override.
    """
    config_changes: Dict[str, Any] = {}
    driver_options: Dict[str, Any] = {}
    overrides = dict(config.strategy_overrides)
    for key, value in params.items():
        if key in CONFIG_PARAMETERS:
            config_changes[key] = value
        elif key in DRIVER_PARAMETERS:
            driver_options[key] = value
        else:
            overrides[key] = value
    config_changes["strategy_overrides"] = overrides
    return config.replace(**config_changes), driver_options


def _as_metric(value: OptimizationMetric | str) -> OptimizationMetric:
    try:
        return OptimizationMetric(getattr(value, "value", value))
    except ValueError as exc:
        raise ConfigurationError(f"Unknown optimization metric: {value!r}") from exc


def score(metrics: Mapping[str, Any], metric: OptimizationMetric | str) -> float:
    metric = _as_metric(metric)
    if metric is OptimizationMetric.COMPOSITE:
        return sum(float(metrics.get(k) or 0) * w for k, w in COMPOSITE_WEIGHTS.items())
    return float(metrics.get(metric.value) or 0)


def sensitivity_analysis(results: List[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Average score per value of each parameter, best value first."""
    if not results:
        return {}
    analysis: Dict[str, Dict[str, Any]] = {}
    for name in results[0]["parameters"]:
        groups: Dict[Any, List[float]] = {}
        for result in results:
            groups.setdefault(result["parameters"][name], []).append(result["score"])
        ranked = sorted(
            ((value, sum(scores) / len(scores), len(scores)) for value, scores in groups.items()),
            key=lambda item: item[1],
            reverse=True,
        )
        all_values = [
            {"value": value, "avg_score": round(avg, 2), "count": count}
            for value, avg, count in ranked
        ]
        analysis[name] = {
            "best_value": all_values[0]["value"],
            "best_score": all_values[0]["avg_score"],
            "all_values": all_values,
        }
    return analysis


class Optimizer:
    """
    Grid search over strategy, cost and driver parameters.

    By default every combination is scored on walk-forward out-of-sample
    aggregates rather than a single in-sample backtest.
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
        parameter_ranges: Optional[Mapping[str, Any]] = None,
        optimization_metric: OptimizationMetric | str = OptimizationMetric.SHARPE_RATIO,
        use_walk_forward: bool = True,
        variant: str = "swing",
        window_type: WindowType | str = WindowType.ROLLING,
        in_sample_days: int = DEFAULT_IN_SAMPLE_DAYS,
        out_of_sample_days: int = DEFAULT_OUT_OF_SAMPLE_DAYS,
        max_workers: Optional[int] = None,
        backtest_options: Optional[Mapping[str, Any]] = None,
    ):
        self.config = config or Config()
        self.instruments = resolve_instruments(instruments, lookup, self.config.instrument_universe)
        self.from_date = from_date
        self.to_date = to_date
        self.feed = feed
        self.evaluator = evaluator
        self.parameter_ranges = dict(parameter_ranges or {})
        self.metric = _as_metric(optimization_metric)
        self.use_walk_forward = use_walk_forward
        self.variant = variant
        self.window_type = window_type
        self.in_sample_days = in_sample_days
        self.out_of_sample_days = out_of_sample_days
        self.max_workers = max_workers
        self.backtest_options = dict(backtest_options or {})

    def test_parameters(self, params: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        config, driver_options = apply_parameters(self.config, params)
        options = {**self.backtest_options, **driver_options}
        if self.use_walk_forward:
            outcome = run_walk_forward(
                self.instruments,
                self.from_date,
                self.to_date,
                config,
                feed=self.feed,
                evaluator=self.evaluator,
                window_type=self.window_type,
                in_sample_days=self.in_sample_days,
                out_of_sample_days=self.out_of_sample_days,
                variant=self.variant,
                **options,
            )
            if not outcome.get("success"):
                return None
            oos = outcome["aggregated"]["out_of_sample"]
            metrics = {key: oos.get(f"avg_{key}") or 0 for key in _OOS_METRICS}
            metrics["total_trades"] = oos.get("total_trades") or 0
            return metrics

        outcome = run_backtest(
            self.instruments,
            self.from_date,
            self.to_date,
            config,
            feed=self.feed,
            evaluator=self.evaluator,
            variant=self.variant,
            **options,
        )
        if not outcome.get("success"):
            return None
        return outcome["results"]

    def _evaluate(self, index: int, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        logger.info("[optimizer] combination {}: {}", index + 1, params)
        try:
            metrics = self.test_parameters(params)
        except ConfigurationError as exc:
            logger.warning("[optimizer] combination {} rejected: {}", index + 1, exc)
            return None
        if metrics is None:
            return None
        return {"parameters": params, "metrics": metrics, "score": score(metrics, self.metric)}

    def run(self) -> Dict[str, Any]:
        combos = expand_parameter_grid(self.parameter_ranges)
        logger.info(
            "[optimizer] testing {} combinations metric={} walk_forward={}",
            len(combos),
            self.metric.value,
            self.use_walk_forward,
        )
        if self.max_workers and self.max_workers > 1 and len(combos) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                outcomes = list(executor.map(self._evaluate, range(len(combos)), combos))
        else:
            outcomes = [self._evaluate(i, params) for i, params in enumerate(combos)]

        # stable: equal scores keep grid order
        results = sorted(
            (o for o in outcomes if o is not None), key=lambda r: r["score"], reverse=True
        )
        best = results[0] if results else None
        logger.info(
            "[optimizer] completed {}/{} best={} score={}",
            len(results),
            len(combos),
            best["parameters"] if best else None,
            best["score"] if best else None,
        )
        return {
            "success": True,
            "best_parameters": best["parameters"] if best else None,
            "best_metrics": best["metrics"] if best else None,
            "all_results": results,
            "sensitivity_analysis": sensitivity_analysis(results),
            "total_combinations_tested": len(results),
        }


def run_optimizer(
    instruments: Iterable[Instrument | InstrumentId],
    from_date: date,
    to_date: date,
    config: Optional[Config] = None,
    *,
    feed: CandleFeed,
    evaluator: StrategyEvaluator,
    parameter_ranges: Optional[Mapping[str, Any]] = None,
    optimization_metric: OptimizationMetric | str = OptimizationMetric.SHARPE_RATIO,
    use_walk_forward: bool = True,
    **kwargs: Any,
) -> Dict[str, Any]:
    return Optimizer(
        instruments,
        from_date,
        to_date,
        config,
        feed=feed,
        evaluator=evaluator,
        parameter_ranges=parameter_ranges,
        optimization_metric=optimization_metric,
        use_walk_forward=use_walk_forward,
        **kwargs,
    ).run()


__all__ = [
    "Optimizer",
    "ParameterRange",
    "apply_parameters",
    "expand_parameter_grid",
    "load_parameter_ranges",
    "run_optimizer",
    "score",
    "sensitivity_analysis",
]
