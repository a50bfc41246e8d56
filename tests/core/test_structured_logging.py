"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from caldelta.core.logging import (
    _NOISE_LOGGERS,
    _account_context,
    add_account_context,
    add_otel_context,
    configure_logging,
    get_account_context,
    set_account_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and account context between tests."""
    token = _account_context.set(None)
    yield
    _account_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestAccountContext:
    def test_set_and_get(self):
        set_account_context("work")
        assert get_account_context() == "work"

    def test_default_is_none(self):
        assert get_account_context() is None


class TestAddAccountContext:
    def test_injects_account(self):
        set_account_context("home")
        result = add_account_context(None, "info", {"event": "test"})
        assert result["account"] == "home"

    def test_explicit_account_wins(self):
        set_account_context("home")
        result = add_account_context(None, "info", {"event": "test", "account": "work"})
        assert result["account"] == "work"

    def test_handles_unset_context(self):
        result = add_account_context(None, "info", {"event": "test"})
        assert result["account"] is None


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_replaces_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in ("httpx", "httpcore", "uvicorn.access"):
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG


class TestLogFiles:
    def test_creates_app_and_transport_logs(self, tmp_path: Path):
        log_dir = tmp_path / "nested" / "logs"
        configure_logging(log_root=log_dir)

        root_files = [
            h.baseFilename
            for h in logging.getLogger().handlers
            if isinstance(h, logging.FileHandler)
        ]
        transport_files = [
            h.baseFilename
            for h in logging.getLogger("httpx").handlers
            if isinstance(h, logging.FileHandler)
        ]
        assert root_files == [str(log_dir / "caldelta.log")]
        assert transport_files == [str(log_dir / "transport.log")]

    def test_app_log_is_json_with_account(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path)
        set_account_context("work")

        logging.getLogger("caldelta.test").info("synced %d calendars", 2)
        for handler in logging.getLogger().handlers:
            handler.flush()

        data = json.loads((tmp_path / "caldelta.log").read_text().strip())
        assert data["event"] == "synced 2 calendars"
        assert data["account"] == "work"
        assert data["logger"] == "caldelta.test"
