from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from tradesim.backtest.config import Config
from tradesim.backtest.data import CandleSeries, DataLoader
from tradesim.backtest.metrics import ResultAnalyzer
from tradesim.backtest.models import (
    CandleFeed,
    CandleView,
    ExitReason,
    Instrument,
    InstrumentId,
    InstrumentLookup,
    RebalanceFrequency,
    Signal,
    StrategyEvaluator,
    Timeframe,
)
from tradesim.backtest.portfolio import Portfolio
from tradesim.backtest.position import Position
from tradesim.backtest.sizing import resolve_quantity
from tradesim.core.exceptions import ConfigurationError
from tradesim.logging_utils import logging_context
from tradesim.telemetry.backtest import record_run, start_span
from tradesim.utils.datetime_utils import as_date, date_range

MIN_DAILY_CANDLES = 50
MIN_WEEKLY_CANDLES = 10

DEFAULT_MAX_POSITIONS = 10
DEFAULT_MIN_HOLDING_DAYS = 30


def _insufficient_data() -> Dict[str, Any]:
    return {"success": False, "error": "Insufficient data"}


class BaseBacktester:
    """
    Day-by-day replay shared by the swing and long-term variants.

    Subclasses implement ``_process_date``; everything else (data loading,
    equity marking, the final liquidation and the analysis) lives here. The
    evaluator only ever sees bars dated on or before the simulated day.
    """

    variant = "base"
    options = frozenset({"trailing_stop_pct", "trailing_stop_amount", "warmup_days"})

    def __init__(
        self,
        instruments: Sequence[Instrument],
        from_date: date,
        to_date: date,
        config: Config,
        *,
        feed: CandleFeed,
        evaluator: StrategyEvaluator,
        trailing_stop_pct: Optional[float] = None,
        trailing_stop_amount: Optional[float] = None,
        warmup_days: int = 0,
    ):
        self.instruments = list(instruments)
        self.from_date = as_date(from_date)
        self.to_date = as_date(to_date)
        if self.from_date > self.to_date:
            raise ConfigurationError("Invalid date range")
        self.config = config
        self.evaluator = evaluator
        self.loader = DataLoader(feed)
        self.trailing_stop_pct = trailing_stop_pct
        self.trailing_stop_amount = trailing_stop_amount
        self.warmup_days = max(int(warmup_days or 0), 0)

        self.portfolio = Portfolio(config.initial_capital, config)
        self.positions: List[Position] = []
        self._by_id: Dict[InstrumentId, Instrument] = {i.id: i for i in self.instruments}
        self._daily: Dict[InstrumentId, CandleSeries] = {}

    # -------- Hooks --------
    def _load(self) -> bool:
        start = self.from_date - timedelta(days=self.warmup_days)
        daily = self.loader.load_for_instruments(
            self.instruments, Timeframe.DAILY, start, self.to_date
        )
        self._daily = self.loader.validate_data(daily, min_candles=MIN_DAILY_CANDLES)
        return bool(self._daily)

    def _process_date(self, current: date) -> None:
        raise NotImplementedError

    def _extra_results(self) -> Dict[str, Any]:
        return {}

    # -------- Shared steps --------
    def _view(self, instrument_id: InstrumentId, current: date) -> CandleView:
        return CandleView(as_of=current, daily=self._daily[instrument_id].view_until(current))

    def _evaluate(self, instrument: Instrument, view: CandleView) -> Optional[Signal]:
        raw = self.evaluator.evaluate(
            instrument, view, overrides=self.config.strategy_overrides
        )
        signal = Signal.coerce(raw)
        if signal is None:
            return None
        # stale signals (no bar on the simulated day) are discarded
        if view.last_bar_date != view.as_of:
            return None
        return signal

    def _open(self, instrument: Instrument, signal: Signal, current: date, *, slots: int) -> bool:
        quantity = resolve_quantity(
            signal,
            self.config,
            equity=self.portfolio.current_equity(self._prices(current)),
            slots=slots,
        )
        trailing_pct = signal.trailing_stop_pct
        trailing_amount = signal.trailing_stop_amount
        if trailing_pct is None and trailing_amount is None:
            trailing_pct = self.trailing_stop_pct
            trailing_amount = self.trailing_stop_amount if trailing_pct is None else None

        opened = self.portfolio.open_position(
            instrument_id=instrument.id,
            entry_date=current,
            entry_price=signal.entry_price,
            quantity=quantity,
            direction=signal.direction,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            trailing_stop_pct=trailing_pct,
            trailing_stop_amount=trailing_amount,
        )
        if opened:
            self.positions.append(self.portfolio.positions[instrument.id])
            logger.debug(
                "[backtest] open {} {} qty={} @ {} on {}",
                instrument.symbol,
                signal.direction.value,
                quantity,
                signal.entry_price,
                current,
            )
        return opened

    def _check_exit(self, instrument_id: InstrumentId, position: Position, current: date) -> None:
        series = self._daily.get(instrument_id)
        if series is None:
            return
        price = series.close_on(current)
        if price is None:
            return
        exit_check = position.check_exit(price, current)
        if exit_check is None:
            return
        self.portfolio.close_position(
            instrument_id, current, exit_check.exit_price, exit_check.exit_reason
        )
        logger.debug(
            "[backtest] close {} {} @ {} on {}",
            instrument_id,
            exit_check.exit_reason.value,
            exit_check.exit_price,
            current,
        )

    def _prices(self, current: date) -> Dict[InstrumentId, float]:
        prices: Dict[InstrumentId, float] = {}
        for instrument_id in self.portfolio.positions:
            series = self._daily.get(instrument_id)
            close = series.last_close_until(current) if series is not None else None
            if close is not None:
                prices[instrument_id] = close
        return prices

    def _close_all(self) -> None:
        for instrument_id, position in list(self.portfolio.positions.items()):
            series = self._daily.get(instrument_id)
            close = series.last_close if series is not None else None
            price = close if close is not None else position.entry_price
            self.portfolio.close_position(
                instrument_id, self.to_date, price, ExitReason.END_OF_BACKTEST
            )

    # -------- Entry point --------
    def run(self) -> Dict[str, Any]:
        run_id = uuid.uuid4().hex[:12]
        attributes = {
            "variant": self.variant,
            "instruments": len(self.instruments),
            "from_date": self.from_date.isoformat(),
            "to_date": self.to_date.isoformat(),
        }
        with logging_context(run_id=run_id), start_span("backtest.run", attributes):
            logger.info(
                "[backtest] start variant={} instruments={} range={}..{}",
                self.variant,
                len(self.instruments),
                self.from_date,
                self.to_date,
            )
            if not self._load():
                logger.warning("[backtest] no instrument has enough history; aborting")
                return _insufficient_data()

            for current in date_range(self.from_date, self.to_date):
                self._process_date(current)
                self.portfolio.update_equity_curve(current, self._prices(current))

            self._close_all()

            analyzer = ResultAnalyzer(
                positions=self.positions,
                initial_capital=self.config.initial_capital,
                final_capital=self.portfolio.current_equity(),
                equity_curve=self.portfolio.equity_curve,
            )
            results = analyzer.analyze()
            results.update(self._extra_results())
            record_run({**attributes, "trades": results["total_trades"]})
            logger.info(
                "[backtest] done variant={} trades={} return={}% sharpe={}",
                self.variant,
                results["total_trades"],
                results["total_return"],
                results["sharpe_ratio"],
            )
            return {
                "success": True,
                "results": results,
                "positions": self.positions,
                "portfolio": self.portfolio,
            }


class SwingBacktester(BaseBacktester):
    """Enter on fresh signals for any flat instrument; exit on stop, trail or target."""

    variant = "swing"

    def _process_date(self, current: date) -> None:
        slots = max(len(self._daily), 1)
        for instrument_id, series in self._daily.items():
            if self.portfolio.has_position(instrument_id):
                continue
            if series.count_until(current) < MIN_DAILY_CANDLES:
                continue
            instrument = self._by_id[instrument_id]
            signal = self._evaluate(instrument, self._view(instrument_id, current))
            if signal is None:
                continue
            self._open(instrument, signal, current, slots=slots)

        for instrument_id, position in list(self.portfolio.positions.items()):
            self._check_exit(instrument_id, position, current)


class LongTermBacktester(BaseBacktester):
    """
    Periodic rebalancing into the best-scored candidates.

    Positions are only exited once they have been held ``min_holding_days``;
    new entries happen on rebalance days (first simulated day, then every
    Monday or every first of the month) until ``max_positions`` is reached.
    """

    variant = "long_term"
    options = BaseBacktester.options | {"rebalance_frequency", "max_positions", "min_holding_days"}

    def __init__(
        self,
        *args: Any,
        rebalance_frequency: RebalanceFrequency | str = RebalanceFrequency.WEEKLY,
        max_positions: int = DEFAULT_MAX_POSITIONS,
        min_holding_days: int = DEFAULT_MIN_HOLDING_DAYS,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        try:
            self.rebalance_frequency = RebalanceFrequency(
                getattr(rebalance_frequency, "value", rebalance_frequency)
            )
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid rebalance frequency: {rebalance_frequency!r}"
            ) from exc
        self.max_positions = int(max_positions)
        self.min_holding_days = int(min_holding_days)
        self.last_rebalance: Optional[date] = None
        self.composition: List[Dict[str, Any]] = []
        self._weekly: Dict[InstrumentId, CandleSeries] = {}

    def _load(self) -> bool:
        if not super()._load():
            return False
        start = self.from_date - timedelta(days=self.warmup_days)
        weekly = self.loader.load_for_instruments(
            self.instruments, Timeframe.WEEKLY, start, self.to_date
        )
        self._weekly = self.loader.validate_data(weekly, min_candles=MIN_WEEKLY_CANDLES)
        return bool(self._weekly)

    def _view(self, instrument_id: InstrumentId, current: date) -> CandleView:
        return CandleView(
            as_of=current,
            daily=self._daily[instrument_id].view_until(current),
            weekly=self._weekly[instrument_id].view_until(current),
        )

    def should_rebalance(self, current: date) -> bool:
        if self.last_rebalance is None:
            return True
        if current <= self.last_rebalance:
            return False
        if self.rebalance_frequency is RebalanceFrequency.WEEKLY:
            return current.weekday() == 0
        return current.day == 1

    def _process_date(self, current: date) -> None:
        if self.should_rebalance(current):
            self._rebalance(current)
            self.last_rebalance = current
        self._check_exits(current)

    def _check_exits(self, current: date) -> None:
        for instrument_id, position in list(self.portfolio.positions.items()):
            if position.holding_days(current) < self.min_holding_days:
                continue
            self._check_exit(instrument_id, position, current)

    def _candidates(self, current: date) -> List[tuple]:
        scored = []
        for instrument_id, daily in self._daily.items():
            if self.portfolio.has_position(instrument_id):
                continue
            weekly = self._weekly.get(instrument_id)
            if weekly is None:
                continue
            if daily.count_until(current) < MIN_DAILY_CANDLES:
                continue
            if weekly.count_until(current) < MIN_WEEKLY_CANDLES:
                continue
            instrument = self._by_id[instrument_id]
            signal = self._evaluate(instrument, self._view(instrument_id, current))
            if signal is not None:
                scored.append((instrument, signal))
        # sorted() is stable: equal scores keep universe order
        return sorted(scored, key=lambda pair: pair[1].score, reverse=True)

    def _rebalance(self, current: date) -> None:
        self._check_exits(current)

        available = self.max_positions - self.portfolio.open_count
        if available > 0:
            for instrument, signal in self._candidates(current):
                if self._open(instrument, signal, current, slots=self.max_positions):
                    available -= 1
                if available <= 0:
                    break

        self.composition.append(
            {
                "date": current,
                "positions": self.portfolio.open_count,
                "instruments": [
                    self._by_id[iid].symbol if iid in self._by_id else f"ID:{iid}"
                    for iid in self.portfolio.positions
                ],
                "equity": round(self.portfolio.current_equity(self._prices(current)), 2),
            }
        )
        logger.debug(
            "[backtest] rebalance {} open={} equity={}",
            current,
            self.portfolio.open_count,
            self.composition[-1]["equity"],
        )

    def _extra_results(self) -> Dict[str, Any]:
        commission = self.portfolio.total_commission
        slippage = self.portfolio.total_slippage
        rebalances = len(self.composition)
        avg_positions = (
            round(sum(c["positions"] for c in self.composition) / rebalances, 2)
            if rebalances
            else 0
        )
        return {
            "total_commission": round(commission, 2),
            "total_slippage": round(slippage, 2),
            "total_trading_costs": round(commission + slippage, 2),
            "portfolio_composition_history": self.composition,
            "rebalance_count": rebalances,
            "avg_positions_per_rebalance": avg_positions,
        }


_VARIANTS = {
    "swing": SwingBacktester,
    "long_term": LongTermBacktester,
}


def resolve_instruments(
    instruments: Iterable[Instrument | InstrumentId],
    lookup: Optional[InstrumentLookup] = None,
    universe: Sequence[InstrumentId] = (),
) -> List[Instrument]:
    """Turn ids into Instruments, honouring the universe filter and tradability."""
    allowed = set(universe)
    resolved: List[Instrument] = []
    for item in instruments:
        if isinstance(item, Instrument):
            instrument = item
        elif lookup is not None:
            instrument = lookup.get(item)
            if instrument is None:
                logger.warning("[backtest] unknown instrument {}; skipped", item)
                continue
        else:
            instrument = Instrument(id=item, symbol=str(item))
        if allowed and instrument.id not in allowed:
            continue
        if not instrument.tradable:
            logger.debug("[backtest] {} is not tradable; skipped", instrument.symbol)
            continue
        resolved.append(instrument)
    return resolved


def run_backtest(
    instruments: Iterable[Instrument | InstrumentId],
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    config: Optional[Config] = None,
    *,
    feed: CandleFeed,
    evaluator: StrategyEvaluator,
    lookup: Optional[InstrumentLookup] = None,
    variant: str = "swing",
    **options: Any,
) -> Dict[str, Any]:
    """
    Replay ``instruments`` between ``from_date`` and ``to_date``.

    Args:
        instruments: Instruments or ids (ids are resolved through ``lookup``).
        from_date (date | None): First simulated day, defaults to the Config's.
        to_date (date | None): Last simulated day, defaults to the Config's.
        config (Config | None): Run parameters, defaults to ``Config()``.
        feed (CandleFeed): Historical bar source.
        evaluator (StrategyEvaluator): Produces entry signals.
        lookup (InstrumentLookup | None): Instrument metadata source.
        variant (str): ``swing`` or ``long_term``.
        **options: Driver options (``trailing_stop_pct``, ``trailing_stop_amount``,
            ``warmup_days`` and, for long_term, ``rebalance_frequency``,
            ``max_positions``, ``min_holding_days``).

    Returns:
        Dict[str, Any]: ``{"success", "results", "positions", "portfolio"}`` or
        ``{"success": False, "error": ...}``.
    """
    config = config or Config()
    try:
        driver_cls = _VARIANTS[str(variant).lower()]
    except KeyError as exc:
        raise ConfigurationError(f"Unknown backtest variant: {variant!r}") from exc

    options = {k: v for k, v in options.items() if v is not None}
    unknown = sorted(set(options) - driver_cls.options)
    if unknown:
        raise ConfigurationError(
            [f"{name} is not an option of the {driver_cls.variant} backtest" for name in unknown]
        )

    resolved = resolve_instruments(instruments, lookup, config.instrument_universe)
    if not resolved:
        logger.warning("[backtest] no tradable instruments")
        return _insufficient_data()

    driver = driver_cls(
        resolved,
        from_date or config.from_date,
        to_date or config.to_date,
        config,
        feed=feed,
        evaluator=evaluator,
        **options,
    )
    return driver.run()


__all__ = [
    "BaseBacktester",
    "LongTermBacktester",
    "SwingBacktester",
    "resolve_instruments",
    "run_backtest",
]
