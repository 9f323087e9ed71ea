from __future__ import annotations

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

from tradesim.logging_utils import setup_test_logging

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def load_env():
    load_dotenv(override=True)


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    setup_test_logging(Path("tradesim-logs/"))
    yield
