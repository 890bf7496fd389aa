"""
Unit tests for logging setup.
"""

import logging

import json_log_formatter
import pytest

from broker.aclsync.config import ObservabilityConfig, ServerConfig
from broker.aclsync.main import setup_logging


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(ServerConfig())
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_text_format(self):
        setup_logging(ServerConfig(observability=ObservabilityConfig("DEBUG", "text")))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
