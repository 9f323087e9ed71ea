from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import pandas as pd
from loguru import logger

from tradesim.backtest.models import (
    BAR_COLUMNS,
    Candle,
    CandleFeed,
    Instrument,
    InstrumentId,
    Timeframe,
)
from tradesim.core.exceptions import DataValidationError

PRICE_COLUMNS = ("open", "high", "low", "close")


def _candle_row(candle: Candle | Mapping[str, Any]) -> Dict[str, Any]:
    if isinstance(candle, Candle):
        return candle.as_dict()
    if isinstance(candle, Mapping):
        missing = [k for k in ("timestamp", *PRICE_COLUMNS) if candle.get(k) is None]
        if missing:
            raise DataValidationError(f"candle missing field(s): {', '.join(missing)}")
        row = {"timestamp": candle["timestamp"], **{c: candle[c] for c in PRICE_COLUMNS}}
        row["volume"] = candle.get("volume") or 0.0
        return row
    raise DataValidationError(f"unsupported candle payload: {type(candle)!r}")


def candles_to_frame(candles: Sequence[Candle | Mapping[str, Any]]) -> pd.DataFrame:
    """
    Converts feed output into an OHLCV DataFrame indexed by timestamp.

    The feed contract is ascending, unique timestamps; violations are repaired
    (sorted, last duplicate kept) with a warning rather than trusted.
    """
    if not candles:
        return pd.DataFrame(
            columns=list(BAR_COLUMNS), index=pd.DatetimeIndex([], name="timestamp")
        ).astype(float)

    frame = pd.DataFrame([_candle_row(c) for c in candles])
    frame["timestamp"] = pd.to_datetime(frame["timestamp"])
    frame = frame.set_index("timestamp")[list(BAR_COLUMNS)].astype(float)
    if frame.index.tz is not None:
        frame.index = frame.index.tz_localize(None)

    if not frame.index.is_monotonic_increasing:
        logger.warning("[data] candle index not monotonic; sorting by timestamp")
        frame = frame.sort_index(kind="stable")
    if frame.index.has_duplicates:
        logger.warning(
            "[data] dropping {} duplicate candle timestamps",
            int(frame.index.duplicated().sum()),
        )
        frame = frame[~frame.index.duplicated(keep="last")]
    return frame


class CandleSeries:
    """Bars for one instrument and timeframe with date-truncated access."""

    def __init__(self, instrument: Instrument, timeframe: Timeframe, frame: pd.DataFrame):
        self.instrument = instrument
        self.timeframe = timeframe
        self.frame = frame
        self._days = frame.index.normalize()
        self._closes = frame["close"].to_numpy(dtype=float)
        self._close_by_day: Dict[date, float] = {}
        for day, close in zip(self._days, self._closes):
            self._close_by_day[day.date()] = float(close)

    @classmethod
    def from_candles(
        cls,
        instrument: Instrument,
        timeframe: Timeframe,
        candles: Sequence[Candle | Mapping[str, Any]],
    ) -> "CandleSeries":
        return cls(instrument, timeframe, candles_to_frame(candles))

    def __len__(self) -> int:
        return len(self.frame)

    def count_until(self, as_of: date) -> int:
        """Number of bars whose date is on or before ``as_of``."""
        return int(self._days.searchsorted(pd.Timestamp(as_of), side="right"))

    def view_until(self, as_of: date) -> pd.DataFrame:
        return self.frame.iloc[: self.count_until(as_of)]

    def close_on(self, as_of: date) -> Optional[float]:
        return self._close_by_day.get(as_of)

    def last_close_until(self, as_of: date) -> Optional[float]:
        n = self.count_until(as_of)
        return float(self._closes[n - 1]) if n else None

    @property
    def last_close(self) -> Optional[float]:
        return float(self._closes[-1]) if len(self._closes) else None


class DataLoader:
    """Loads bars through the external candle feed and filters thin histories."""

    def __init__(self, feed: CandleFeed):
        self.feed = feed

    def load_for_instrument(
        self,
        instrument: Instrument,
        timeframe: Timeframe,
        from_date: date,
        to_date: date,
    ) -> Optional[CandleSeries]:
        candles = self.feed.load(instrument, timeframe, from_date, to_date)
        if not candles:
            return None
        return CandleSeries.from_candles(instrument, timeframe, candles)

    def load_for_instruments(
        self,
        instruments: Iterable[Instrument],
        timeframe: Timeframe,
        from_date: date,
        to_date: date,
    ) -> Dict[InstrumentId, CandleSeries]:
        data: Dict[InstrumentId, CandleSeries] = {}
        for instrument in instruments:
            series = self.load_for_instrument(instrument, timeframe, from_date, to_date)
            if series is not None:
                data[instrument.id] = series
        logger.debug(
            "[data] loaded {} {} series for {}..{}",
            len(data),
            timeframe.value,
            from_date,
            to_date,
        )
        return data

    @staticmethod
    def validate_data(
        data: Mapping[InstrumentId, CandleSeries], min_candles: int = 50
    ) -> Dict[InstrumentId, CandleSeries]:
        validated: Dict[InstrumentId, CandleSeries] = {}
        for instrument_id, series in data.items():
            size = len(series) if series is not None else 0
            if size >= min_candles:
                validated[instrument_id] = series
            else:
                logger.warning(
                    "[data] insufficient candles for instrument {}: {} < {}",
                    instrument_id,
                    size,
                    min_candles,
                )
        return validated


__all__ = ["CandleSeries", "DataLoader", "candles_to_frame"]
