from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterator

import pandas as pd


def as_date(value) -> date:
    """
    Coerces a date, datetime, pandas Timestamp or ISO string into a date.

    Args:
        value: The value to coerce.

    Returns:
        date: The calendar date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


def date_range(start: date, end: date) -> Iterator[date]:
    """Yields every calendar day from start to end, inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
