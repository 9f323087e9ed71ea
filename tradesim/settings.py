"""Centralized simulation settings powered by Pydantic.

Environment matrix:

| Section      | Environment Variable                | Default      | Purpose                                   |
|--------------|-------------------------------------|--------------|-------------------------------------------|
| Backtest     | `BACKTEST_INITIAL_CAPITAL`          | `100000`     | Starting cash                             |
| Backtest     | `BACKTEST_RISK_PER_TRADE`           | `2.0`        | Percent of capital risked per trade       |
| Backtest     | `BACKTEST_COMMISSION_RATE`          | `0.0`        | Commission, percent of traded notional    |
| Backtest     | `BACKTEST_SLIPPAGE_PCT`             | `0.0`        | Adverse fill adjustment, percent of price |
| Backtest     | `BACKTEST_POSITION_SIZING`          | `risk_based` | Sizing for signals without a quantity     |
| Backtest     | `BACKTEST_WARMUP_DAYS`              | `0`          | Extra history loaded before from_date     |
| Backtest     | `BACKTEST_MAX_WORKERS`              | `None`       | Thread pool size for windows/combinations |
| Long term    | `LONG_TERM_REBALANCE_FREQUENCY`     | `weekly`     | `weekly` (Mondays) or `monthly` (day 1)   |
| Long term    | `LONG_TERM_MAX_POSITIONS`           | `10`         | Concurrent holdings cap                   |
| Long term    | `LONG_TERM_MIN_HOLDING_DAYS`        | `30`         | Days before a holding may be exited       |
| Long term    | `LONG_TERM_TRAILING_STOP_PCT`       | `None`       | Default trailing stop for new holdings    |
| Walk forward | `WALK_FORWARD_WINDOW_TYPE`          | `rolling`    | `rolling` or `expanding`                  |
| Walk forward | `WALK_FORWARD_IN_SAMPLE_DAYS`       | `90`         | In-sample window length                   |
| Walk forward | `WALK_FORWARD_OUT_OF_SAMPLE_DAYS`   | `30`         | Out-of-sample window length               |
| Monte Carlo  | `MONTE_CARLO_SIMULATIONS`           | `1000`       | Trials per run                            |
| Monte Carlo  | `MONTE_CARLO_SEED`                  | `None`       | Seed for reproducible permutations        |
| Sentry       | `SENTRY_DSN`                        | `None`       | Sentry ingest DSN                         |
| Sentry       | `SENTRY_TRACES_SAMPLE_RATE`         | `0.0`        | Fraction of transactions to trace         |
| Sentry       | `SENTRY_ENVIRONMENT`                | `None`       | Deployment environment label              |
| Logging      | `LOG_LEVEL`                         | `INFO`       | Loguru sink level                         |
| Logging      | `ENV`                               | `local`      | Environment tag on every log line         |

Algorithm modules never read these values. Callers resolve them once (see
``resolve_config``) and pass the result in explicitly.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tradesim.backtest.config import (
    DEFAULT_COMMISSION_RATE,
    DEFAULT_INITIAL_CAPITAL,
    DEFAULT_RISK_PER_TRADE,
    DEFAULT_SLIPPAGE_PCT,
    Config,
)
from tradesim.backtest.models import PositionSizingMethod, RebalanceFrequency, WindowType


class _SettingsBase(BaseSettings):
    """Common configuration for BaseSettings subclasses."""

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        extra="ignore",
        case_sensitive=True,
        frozen=True,
    )


class BacktestSettings(_SettingsBase):
    """Run parameters and cost model defaults."""

    initial_capital: float = Field(
        default=DEFAULT_INITIAL_CAPITAL, alias="BACKTEST_INITIAL_CAPITAL"
    )
    risk_per_trade: float = Field(
        default=DEFAULT_RISK_PER_TRADE, alias="BACKTEST_RISK_PER_TRADE"
    )
    commission_rate: float = Field(
        default=DEFAULT_COMMISSION_RATE, alias="BACKTEST_COMMISSION_RATE"
    )
    slippage_pct: float = Field(default=DEFAULT_SLIPPAGE_PCT, alias="BACKTEST_SLIPPAGE_PCT")
    position_sizing_method: PositionSizingMethod = Field(
        default=PositionSizingMethod.RISK_BASED, alias="BACKTEST_POSITION_SIZING"
    )
    warmup_days: int = Field(default=0, ge=0, alias="BACKTEST_WARMUP_DAYS")
    max_workers: int | None = Field(default=None, alias="BACKTEST_MAX_WORKERS")

    @field_validator("position_sizing_method", mode="before")
    @classmethod
    def _normalize_sizing(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class LongTermSettings(_SettingsBase):
    """Rebalancing driver defaults."""

    rebalance_frequency: RebalanceFrequency = Field(
        default=RebalanceFrequency.WEEKLY, alias="LONG_TERM_REBALANCE_FREQUENCY"
    )
    max_positions: int = Field(default=10, gt=0, alias="LONG_TERM_MAX_POSITIONS")
    min_holding_days: int = Field(default=30, ge=0, alias="LONG_TERM_MIN_HOLDING_DAYS")
    trailing_stop_pct: float | None = Field(default=None, alias="LONG_TERM_TRAILING_STOP_PCT")


class WalkForwardSettings(_SettingsBase):
    window_type: WindowType = Field(default=WindowType.ROLLING, alias="WALK_FORWARD_WINDOW_TYPE")
    in_sample_days: int = Field(default=90, gt=0, alias="WALK_FORWARD_IN_SAMPLE_DAYS")
    out_of_sample_days: int = Field(default=30, gt=0, alias="WALK_FORWARD_OUT_OF_SAMPLE_DAYS")


class MonteCarloSettings(_SettingsBase):
    simulations: int = Field(default=1000, gt=0, alias="MONTE_CARLO_SIMULATIONS")
    seed: int | None = Field(default=None, alias="MONTE_CARLO_SEED")


class SentrySettings(_SettingsBase):
    """Sentry SDK configuration."""

    dsn: str | None = Field(default=None, alias="SENTRY_DSN")
    traces_sample_rate: float = Field(default=0.0, alias="SENTRY_TRACES_SAMPLE_RATE")
    environment: str | None = Field(default=None, alias="SENTRY_ENVIRONMENT")

    @computed_field
    @property
    def enabled(self) -> bool:
        return bool(self.dsn)


class LoggingSettings(_SettingsBase):
    level: str = Field(default="INFO", alias="LOG_LEVEL")
    environment: str = Field(default="local", alias="ENV")


class Settings(BaseModel):
    """Aggregate accessor for domain-specific settings."""

    backtest: BacktestSettings = Field(default_factory=BacktestSettings)
    long_term: LongTermSettings = Field(default_factory=LongTermSettings)
    walk_forward: WalkForwardSettings = Field(default_factory=WalkForwardSettings)
    monte_carlo: MonteCarloSettings = Field(default_factory=MonteCarloSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = {
        "frozen": True,
        "arbitrary_types_allowed": True,
    }


def get_settings() -> Settings:
    """Instantiate settings from the current environment."""
    return Settings()


def reload_settings() -> Settings:
    """Alias for get_settings to maintain a consistent API."""
    return get_settings()


def get_backtest_settings() -> BacktestSettings:
    return get_settings().backtest


def get_sentry_settings() -> SentrySettings:
    return get_settings().sentry


def get_logging_settings() -> LoggingSettings:
    return LoggingSettings()


def resolve_config(
    overrides: Optional[Mapping[str, Any]] = None,
    settings: Optional[Settings] = None,
) -> Config:
    """
    Build a validated Config: explicit overrides, then environment, then defaults.

    ``None`` values in ``overrides`` fall through to the next layer.
    """
    settings = settings or get_settings()
    env = settings.backtest
    layered: Dict[str, Any] = {
        "initial_capital": env.initial_capital,
        "risk_per_trade": env.risk_per_trade,
        "commission_rate": env.commission_rate,
        "slippage_pct": env.slippage_pct,
        "position_sizing_method": env.position_sizing_method,
    }
    for key, value in (overrides or {}).items():
        if value is not None:
            layered[key] = value
    return Config.from_mapping(layered)


def long_term_options(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Driver keyword arguments for ``run_backtest(variant="long_term")``."""
    settings = settings or get_settings()
    lt = settings.long_term
    return {
        "rebalance_frequency": lt.rebalance_frequency,
        "max_positions": lt.max_positions,
        "min_holding_days": lt.min_holding_days,
        "trailing_stop_pct": lt.trailing_stop_pct,
        "warmup_days": settings.backtest.warmup_days,
    }


def walk_forward_options(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Window keyword arguments for ``run_walk_forward`` and ``run_optimizer``."""
    settings = settings or get_settings()
    wf = settings.walk_forward
    return {
        "window_type": wf.window_type,
        "in_sample_days": wf.in_sample_days,
        "out_of_sample_days": wf.out_of_sample_days,
        "max_workers": settings.backtest.max_workers,
    }


def monte_carlo_options(settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    return {
        "simulations": settings.monte_carlo.simulations,
        "seed": settings.monte_carlo.seed,
    }


__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "get_backtest_settings",
    "get_sentry_settings",
    "get_logging_settings",
    "resolve_config",
    "long_term_options",
    "walk_forward_options",
    "monte_carlo_options",
    "BacktestSettings",
    "LongTermSettings",
    "WalkForwardSettings",
    "MonteCarloSettings",
    "SentrySettings",
    "LoggingSettings",
]
