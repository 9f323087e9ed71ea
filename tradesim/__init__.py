import os
from pathlib import Path

from dotenv import load_dotenv

__version__ = "0.3.0"

# Load environment variables early so SENTRY_DSN and BACKTEST_* are visible to settings
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _detect_build_version() -> str:
    explicit = os.getenv("APP_VERSION")
    if explicit:
        return explicit
    return __version__


APP_VERSION = _detect_build_version()

# Sentry only reports from long-running sweeps when a DSN is configured.
# Imported after APP_VERSION: settings pulls in the backtest package, which reads it.
from tradesim.telemetry.sentry import init_sentry  # noqa: E402

init_sentry(APP_VERSION)
