from __future__ import annotations

from typing import Iterable, List


class TradeSimError(Exception):
    """Base class for all tradesim exceptions."""


class ConfigurationError(TradeSimError):
    """Raised for invalid run parameters; lists every violated constraint."""

    def __init__(self, errors: Iterable[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__(", ".join(self.errors))


class DataValidationError(TradeSimError):
    """Raised when a candle payload cannot be coerced into a bar."""


__all__ = [
    "TradeSimError",
    "ConfigurationError",
    "DataValidationError",
]
