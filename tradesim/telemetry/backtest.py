"""Minimal helpers for backtest telemetry (no-op until an OTEL SDK is installed)."""

from __future__ import annotations

from typing import Any, Dict

from opentelemetry import trace
from opentelemetry.metrics import get_meter

_tracer = trace.get_tracer(__name__)
_meter = get_meter(__name__)

_run_counter = _meter.create_counter(
    name="backtest_runs_total",
    unit="1",
    description="Number of backtest runs completed",
)


def _clean(attributes: Dict[str, Any]) -> Dict[str, Any]:
    # OTEL attributes must be primitives
    out: Dict[str, Any] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            out[key] = value
        else:
            out[key] = str(value)
    return out


def start_span(name: str, attributes: Dict[str, Any]):
    return _tracer.start_as_current_span(name, attributes=_clean(attributes))


def record_run(attributes: Dict[str, Any]) -> None:
    _run_counter.add(1, attributes=_clean(attributes))


__all__ = ["start_span", "record_run"]
