"""Backtesting and simulation engine for tradesim.
Provides the day-by-day replay drivers, performance metrics, walk-forward validation, Monte Carlo robustness checks and grid-search optimization.
"""

from tradesim.backtest.config import Config
from tradesim.backtest.engine import run_backtest
from tradesim.backtest.monte_carlo import run_monte_carlo
from tradesim.backtest.optimizer import ParameterRange, run_optimizer
from tradesim.backtest.walk_forward import run_walk_forward

__all__ = [
    "Config",
    "ParameterRange",
    "run_backtest",
    "run_monte_carlo",
    "run_optimizer",
    "run_walk_forward",
]
