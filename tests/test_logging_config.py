"""
Tests for panel logging configuration.
"""
import logging

import pytest

from src.shared.logging_config import LOG_LEVEL_ENV, QUIET_LOGGERS, configure_logging, resolve_level


@pytest.fixture(autouse=True)
def _restore_root_logger(monkeypatch):
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_default_level_is_info():
    configure_logging()
    assert logging.getLogger().level == logging.INFO


def test_env_overrides_level(monkeypatch):
    monkeypatch.setenv(LOG_LEVEL_ENV, "debug")
    configure_logging()
    assert logging.getLogger().level == logging.DEBUG


def test_unknown_env_level_falls_back(monkeypatch):
    monkeypatch.setenv(LOG_LEVEL_ENV, "chatty")
    assert resolve_level(logging.WARNING) == logging.WARNING


def test_database_and_transport_loggers_are_quiet():
    configure_logging()
    assert "sqlalchemy.engine" in QUIET_LOGGERS
    for name in QUIET_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING
