"""Sentry bootstrap driven by ``SentrySettings``."""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from tradesim.settings import SentrySettings, get_logging_settings, get_sentry_settings


def init_sentry(release: str, settings: Optional[SentrySettings] = None) -> bool:
    """Initialise the Sentry SDK when a DSN is configured. Returns whether it was enabled."""
    settings = settings or get_sentry_settings()
    if not settings.enabled:
        logging.getLogger(__name__).debug("Sentry DSN not set; Sentry disabled")
        return False

    sentry_sdk.init(
        dsn=settings.dsn,
        integrations=[
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=settings.traces_sample_rate,
        environment=settings.environment or get_logging_settings().environment,
        release=release,
    )
    return True


__all__ = ["init_sentry"]
