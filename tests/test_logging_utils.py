from __future__ import annotations

import logging
from contextlib import contextmanager

import pytest
from loguru import logger

from tradesim import APP_VERSION
from tradesim.logging_utils import logging_context, setup_logging, setup_test_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    setup_logging(force=True, level="INFO")
    yield
    setup_logging(force=True, level="INFO")


@contextmanager
def capture_records(level=logging.INFO):
    records = []

    class ListHandler(logging.Handler):
        def emit(self, record):
            records.append(record)

    handler = ListHandler()
    handler.setLevel(level)
    root = logging.getLogger()
    prev_level = root.level
    root.setLevel(level)
    root.addHandler(handler)
    try:
        yield records
    finally:
        root.removeHandler(handler)
        root.setLevel(prev_level)


def test_setup_logging_attaches_metadata(monkeypatch):
    monkeypatch.setenv("ENV", "staging")

    setup_logging(force=True, level="INFO")

    with capture_records() as records:
        logger.info("hello world")

    record = records[-1]
    assert record.getMessage() == "hello world"
    assert record.environment == "staging"
    assert record.service_version == APP_VERSION
    assert record.run_id == "-"


def test_logging_context_sets_run_id():
    with capture_records() as records:
        with logging_context(run_id="run-1"):
            logger.info("inside run")
        logger.info("after run")

    assert records[-2].run_id == "run-1"
    assert records[-1].run_id == "-"


def test_setup_test_logging_writes_to_directory(tmp_path):
    setup_test_logging(tmp_path / "logs", level="DEBUG")
    logger.debug("to file")
    log_file = tmp_path / "logs" / "pytest.log"
    assert log_file.exists()
    assert "to file" in log_file.read_text()


def test_setup_logging_reads_level_from_settings(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")

    setup_logging(force=True)

    with capture_records() as records:
        logger.info("quiet")
        logger.warning("loud")

    assert [r.getMessage() for r in records] == ["loud"]


def test_explicit_level_beats_settings(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")

    setup_logging(force=True, level="INFO")

    with capture_records() as records:
        logger.info("kept")

    assert records[-1].getMessage() == "kept"
