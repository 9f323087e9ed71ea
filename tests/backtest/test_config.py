from __future__ import annotations

from datetime import date, timedelta

import pytest

from tradesim.backtest.config import Config
from tradesim.backtest.models import Direction, PositionSizingMethod
from tradesim.core.exceptions import ConfigurationError


def test_risk_amount_per_trade_example():
    cfg = Config(initial_capital=100_000, risk_per_trade=2.0)
    assert cfg.risk_amount_per_trade() == 2000.0


@pytest.mark.parametrize(
    "capital,risk,expected",
    [(25_000, 1.5, 375.0), (50_000, 0.1, 50.0), (99_999.99, 10, 10000.0)],
)
def test_risk_amount_rounds_to_cents(capital, risk, expected):
    assert Config(initial_capital=capital, risk_per_trade=risk).risk_amount_per_trade() == expected


def test_missing_dates_default_to_trailing_year():
    cfg = Config()
    assert cfg.to_date == date.today()
    assert cfg.from_date == date.today() - timedelta(days=365)


def test_validation_lists_every_violation():
    with pytest.raises(ConfigurationError) as excinfo:
        Config(
            initial_capital=-1,
            risk_per_trade=20,
            commission_rate=-0.1,
            slippage_pct=-1,
            position_sizing_method="kelly",
            from_date=date(2024, 2, 1),
            to_date=date(2024, 1, 1),
        )
    errors = excinfo.value.errors
    assert "Initial capital must be positive" in errors
    assert "Risk per trade must be between 0.1 and 10%" in errors
    assert "Commission rate must be non-negative" in errors
    assert "Slippage must be non-negative" in errors
    assert "Invalid position sizing method" in errors
    assert "Invalid date range" in errors


def test_non_numeric_fields_are_reported_with_range_violations():
    with pytest.raises(ConfigurationError) as excinfo:
        Config(initial_capital="lots", risk_per_trade=50, commission_rate=-1)
    assert excinfo.value.errors == [
        "initial_capital must be numeric (got 'lots')",
        "Risk per trade must be between 0.1 and 10%",
        "Commission rate must be non-negative",
    ]


def test_sizing_method_accepts_strings():
    cfg = Config(position_sizing_method="Equal_Weight")
    assert cfg.position_sizing_method is PositionSizingMethod.EQUAL_WEIGHT


def test_apply_slippage_polarity():
    cfg = Config(slippage_pct=1.0)
    assert cfg.apply_slippage(100.0, Direction.LONG) == pytest.approx(101.0)
    assert cfg.apply_slippage(100.0, "short") == pytest.approx(99.0)
    assert Config().apply_slippage(100.0, Direction.LONG) == 100.0


def test_commission_helpers():
    cfg = Config(commission_rate=0.5)
    assert cfg.apply_commission(1000.0) == pytest.approx(1005.0)
    assert cfg.commission_fee(1000.0) == pytest.approx(5.0)
    assert Config().apply_commission(1000.0) == 1000.0


def test_from_mapping_and_to_dict_round_trip():
    cfg = Config.from_mapping(
        {
            "initial_capital": 50_000,
            "risk_per_trade": 1.0,
            "position_sizing_method": "fixed",
            "date_range": {"from_date": "2024-01-01", "to_date": "2024-06-30"},
            "strategy_overrides": {"rsi_period": 14},
            "slippage_pct": None,
        }
    )
    assert cfg.from_date == date(2024, 1, 1)
    assert cfg.to_date == date(2024, 6, 30)
    assert cfg.slippage_pct == 0.0

    data = cfg.to_dict()
    assert data["position_sizing_method"] == "fixed"
    assert data["strategy_overrides"] == {"rsi_period": 14}
    assert Config.from_mapping(data) == cfg


def test_replace_revalidates():
    cfg = Config(from_date=date(2024, 1, 1), to_date=date(2024, 12, 31))
    assert cfg.replace(risk_per_trade=5).risk_per_trade == 5.0
    with pytest.raises(ConfigurationError):
        cfg.replace(risk_per_trade=50)
