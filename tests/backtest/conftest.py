from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pytest

from tradesim.backtest.models import (
    Candle,
    CandleView,
    Direction,
    Instrument,
    Signal,
    Timeframe,
)


def make_candles(closes: Sequence[float], start: date, *, skip: Sequence[date] = ()) -> List[Candle]:
    """One bar per calendar day from ``start``; dates in ``skip`` have no bar."""
    skipped = set(skip)
    candles = []
    for i, close in enumerate(closes):
        day = start + timedelta(days=i)
        if day in skipped:
            continue
        close = float(close)
        candles.append(
            Candle(
                timestamp=datetime(day.year, day.month, day.day),
                open=close,
                high=close * 1.01,
                low=close * 0.99,
                close=close,
                volume=1_000.0,
            )
        )
    return candles


def random_walk(n: int, *, seed: int = 1337, start_price: float = 100.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    steps = rng.normal(loc=0.0005, scale=0.01, size=n)
    return start_price * np.cumprod(1.0 + steps)


class InMemoryFeed:
    """Candle feed over prepared daily bars; weekly bars are every 7th daily bar."""

    def __init__(self, daily: Mapping[Any, Sequence[Candle]]):
        self.daily = {k: list(v) for k, v in daily.items()}
        self.calls: List[tuple] = []

    def load(self, instrument: Instrument, timeframe: Timeframe, from_date: date, to_date: date):
        self.calls.append((instrument.id, timeframe, from_date, to_date))
        candles = self.daily.get(instrument.id, [])
        if timeframe is Timeframe.WEEKLY:
            candles = candles[::7]
        return [c for c in candles if from_date <= c.day <= to_date]


class ScriptedEvaluator:
    """Returns pre-scripted signals keyed by (instrument id, as-of date)."""

    def __init__(self, script: Optional[Mapping[tuple, Any]] = None):
        self.script = dict(script or {})
        self.views: List[CandleView] = []
        self.overrides: List[Mapping[str, Any]] = []

    def evaluate(self, instrument: Instrument, view: CandleView, *, overrides: Mapping[str, Any]):
        self.views.append(view)
        self.overrides.append(overrides)
        return self.script.get((instrument.id, view.as_of))


class AlwaysLongEvaluator:
    """Long at the last close on every call, stop/target as fractions of the close."""

    def __init__(self, scores: Optional[Dict[Any, float]] = None, stop: float = 0.5, target: float = 2.0):
        self.scores = scores or {}
        self.stop = stop
        self.target = target

    def evaluate(self, instrument: Instrument, view: CandleView, *, overrides: Mapping[str, Any]):
        close = float(view.daily["close"].iloc[-1])
        return Signal(
            direction=Direction.LONG,
            entry_price=close,
            stop_loss=close * self.stop,
            take_profit=close * self.target,
            quantity=int(overrides.get("qty", 10)),
            score=self.scores.get(instrument.id, 0.0),
        )


@pytest.fixture
def start_day() -> date:
    return date(2024, 1, 1)


@pytest.fixture
def instrument() -> Instrument:
    return Instrument(id=1, symbol="ACME")


@pytest.fixture
def flat_feed(instrument: Instrument, start_day: date) -> InMemoryFeed:
    return InMemoryFeed({instrument.id: make_candles([100.0] * 120, start_day)})


@pytest.fixture
def bars():
    return make_candles


@pytest.fixture
def walk():
    return random_walk


@pytest.fixture
def feed_factory():
    return InMemoryFeed


@pytest.fixture
def scripted():
    return ScriptedEvaluator


@pytest.fixture
def always_long():
    return AlwaysLongEvaluator
