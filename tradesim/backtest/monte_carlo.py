from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
from loguru import logger

from tradesim.backtest.models import SimulationTrial

DEFAULT_SIMULATIONS = 1000
CONFIDENCE_LEVELS = (0.90, 0.95, 0.99)
LARGE_DRAWDOWN_PCT = 20.0
WORST_CASE_FRACTION = 0.05


def _pnl_of(item: Any) -> float:
    if hasattr(item, "calculate_pnl"):
        return float(item.calculate_pnl())
    if isinstance(item, Mapping):
        return float(item.get("pnl") or 0.0)
    return float(item)


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """Order-statistic percentile: element at ``ceil(p * (n - 1))`` of a sorted list."""
    if not len(sorted_values):
        return None
    if p >= 1.0:
        return sorted_values[-1]
    index = math.ceil(p * (len(sorted_values) - 1))
    return sorted_values[min(index, len(sorted_values) - 1)]


def _stats(values: np.ndarray) -> Dict[str, float]:
    if values.size == 0:
        return {"mean": 0.0, "std": 0.0, "min": 0.0, "max": 0.0}
    std = float(np.std(values, ddof=1)) if values.size > 1 else 0.0
    return {
        "mean": round(float(values.mean()), 2),
        "std": round(std, 2),
        "min": float(values.min()),
        "max": float(values.max()),
    }


class MonteCarlo:
    """
    Trade-order robustness check.

    Each trial replays the same realized P&L values in a random order, so the
    final capital is identical across trials while the path (and therefore
    the drawdown) varies. ``seed`` makes the permutations reproducible.
    """

    def __init__(
        self,
        positions: Iterable[Any],
        initial_capital: float,
        simulations: int = DEFAULT_SIMULATIONS,
        confidence_levels: Sequence[float] = CONFIDENCE_LEVELS,
        seed: Optional[int] = None,
    ):
        self.pnls = np.array([_pnl_of(p) for p in positions], dtype=float)
        self.initial_capital = float(initial_capital)
        self.simulations = int(simulations)
        self.confidence_levels = tuple(confidence_levels)
        self.rng = np.random.default_rng(seed)
        self.trials: List[SimulationTrial] = []

    def run_trial(self) -> SimulationTrial:
        shuffled = self.rng.permutation(self.pnls)
        path = self.initial_capital + np.cumsum(shuffled)
        curve = np.r_[self.initial_capital, path]
        peaks = np.maximum.accumulate(curve)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - curve) / peaks * 100, 0.0)

        final = float(curve[-1])
        trades = int(shuffled.size)
        wins = int((shuffled > 0).sum())
        losses = int((shuffled < 0).sum())
        total_return = (
            (final - self.initial_capital) / self.initial_capital * 100
            if self.initial_capital
            else 0.0
        )
        return SimulationTrial(
            final_capital=round(final, 2),
            total_return=round(total_return, 2),
            total_pnl=round(float(shuffled.sum()), 2),
            max_drawdown=round(float(drawdowns.max()), 2),
            total_trades=trades,
            winning_trades=wins,
            losing_trades=losses,
            win_rate=round(wins / trades * 100, 2) if trades else 0.0,
            equity_curve=tuple(float(v) for v in curve),
        )

    def run(self) -> Dict[str, Any]:
        if self.pnls.size == 0:
            return {"success": False, "error": "No positions provided"}

        logger.info(
            "[monte_carlo] {} simulations over {} trades", self.simulations, self.pnls.size
        )
        self.trials = []
        for i in range(self.simulations):
            if i % 100 == 0:
                logger.debug("[monte_carlo] simulation {}/{}", i + 1, self.simulations)
            self.trials.append(self.run_trial())

        return {
            "success": True,
            "simulations": self.simulations,
            "initial_capital": self.initial_capital,
            "results": self.summarize(),
            "probability_distributions": self.probability_distributions(),
            "confidence_intervals": self.confidence_intervals(),
            "worst_case_scenarios": self.worst_case_scenarios(),
        }

    # -------- Analysis --------
    def _column(self, name: str) -> np.ndarray:
        return np.array([getattr(t, name) for t in self.trials], dtype=float)

    def summarize(self) -> Dict[str, float]:
        if not self.trials:
            return {}
        capital = _stats(self._column("final_capital"))
        returns = _stats(self._column("total_return"))
        drawdown = _stats(self._column("max_drawdown"))
        return {
            "mean_final_capital": capital["mean"],
            "mean_total_return": returns["mean"],
            "mean_max_drawdown": drawdown["mean"],
            "mean_win_rate": _stats(self._column("win_rate"))["mean"],
            "std_dev_final_capital": capital["std"],
            "std_dev_total_return": returns["std"],
            "std_dev_max_drawdown": drawdown["std"],
            "min_final_capital": capital["min"],
            "max_final_capital": capital["max"],
            "min_total_return": returns["min"],
            "max_total_return": returns["max"],
            "min_max_drawdown": drawdown["min"],
            "max_max_drawdown": drawdown["max"],
        }

    def _distribution(self, name: str) -> Dict[str, Optional[float]]:
        values = self._column(name)
        ordered = sorted(values.tolist())
        stats = _stats(values)
        return {
            "min": ordered[0],
            "q25": percentile(ordered, 0.25),
            "median": percentile(ordered, 0.50),
            "q75": percentile(ordered, 0.75),
            "max": ordered[-1],
            "mean": stats["mean"],
            "std_dev": stats["std"],
        }

    def probability_distributions(self) -> Dict[str, Dict[str, Optional[float]]]:
        if not self.trials:
            return {}
        return {
            "returns": self._distribution("total_return"),
            "drawdowns": self._distribution("max_drawdown"),
        }

    def confidence_intervals(self) -> Dict[float, Dict[str, Dict[str, float]]]:
        if not self.trials:
            return {}
        returns = sorted(self._column("total_return").tolist())
        drawdowns = sorted(self._column("max_drawdown").tolist())
        intervals: Dict[float, Dict[str, Dict[str, float]]] = {}
        for level in self.confidence_levels:
            alpha = 1 - level
            lo, hi = alpha / 2.0, 1 - alpha / 2.0
            intervals[level] = {}
            for key, ordered in (("total_return", returns), ("max_drawdown", drawdowns)):
                lower = percentile(ordered, lo)
                upper = percentile(ordered, hi)
                intervals[level][key] = {
                    "lower": lower,
                    "upper": upper,
                    "range": round(upper - lower, 2),
                }
        return intervals

    def worst_case_scenarios(self) -> Dict[str, Any]:
        if not self.trials:
            return {}
        count = math.ceil(len(self.trials) * WORST_CASE_FRACTION)
        worst = sorted(self.trials, key=lambda t: t.total_return)[:count]
        n = len(self.trials)
        return {
            "worst_5_percent": {
                "count": count,
                "mean_return": round(sum(t.total_return for t in worst) / count, 2),
                "mean_drawdown": round(sum(t.max_drawdown for t in worst) / count, 2),
                "worst_return": worst[0].total_return,
                "worst_drawdown": max(t.max_drawdown for t in worst),
            },
            "probability_of_loss": round(
                sum(1 for t in self.trials if t.total_return < 0) / n * 100, 2
            ),
            "probability_of_large_drawdown": round(
                sum(1 for t in self.trials if t.max_drawdown > LARGE_DRAWDOWN_PCT) / n * 100, 2
            ),
        }


def run_monte_carlo(
    positions: Iterable[Any],
    initial_capital: float,
    simulations: int = DEFAULT_SIMULATIONS,
    confidence_levels: Sequence[float] = CONFIDENCE_LEVELS,
    *,
    seed: Optional[int] = None,
) -> Dict[str, Any]:
    return MonteCarlo(
        positions,
        initial_capital,
        simulations=simulations,
        confidence_levels=confidence_levels,
        seed=seed,
    ).run()


__all__ = ["MonteCarlo", "percentile", "run_monte_carlo", "CONFIDENCE_LEVELS"]
