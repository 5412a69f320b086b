"""
Unit tests for settings and logging setup.

Tests cover:
- Defaults and environment overrides
- Text and JSON log formatters
"""

import logging

import json_log_formatter
import pytest

from docrepo.config import StoreSettings
from docrepo.logging_config import setup_logging


class TestStoreSettings:
    """Tests for StoreSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DOCREPO_DATA_DIR", raising=False)

        settings = StoreSettings()

        assert settings.data_dir == "./data"
        assert settings.wal_mode is True
        assert settings.change_log_limit == 10000

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("DOCREPO_DATA_DIR", "/tmp/middle-earth")
        monkeypatch.setenv("DOCREPO_CHANGE_POLL_INTERVAL", "2.5")
        monkeypatch.setenv("DOCREPO_WAL_MODE", "false")

        settings = StoreSettings()

        assert settings.data_dir == "/tmp/middle-earth"
        assert settings.change_poll_interval == 2.5
        assert settings.wal_mode is False


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_text_format(self):
        setup_logging(StoreSettings(log_level="debug", log_format="text"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_json_format(self):
        setup_logging(StoreSettings(log_format="json"))

        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, json_log_formatter.JSONFormatter)

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(StoreSettings(log_level="chatty"))

        assert logging.getLogger().level == logging.INFO
