"""Tests for structured logging configuration."""

import logging

import pytest
import structlog

from waypoint.config import Settings
from waypoint.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Isolate each test: reset structlog config and clear context vars."""
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _settings(**logging_kwargs) -> Settings:
    return Settings(logging=logging_kwargs)


class TestConfigureLogging:
    def test_returns_eight_char_hex_run_id(self):
        run_id = configure_logging(_settings())
        assert len(run_id) == 8
        assert all(c in "0123456789abcdef" for c in run_id)

    def test_run_id_bound_to_context_vars(self):
        run_id = configure_logging(_settings())
        assert structlog.contextvars.get_contextvars().get("run_id") == run_id

    def test_reconfigure_replaces_run_id(self):
        first = configure_logging(_settings())
        second = configure_logging(_settings())
        ctx = structlog.contextvars.get_contextvars()
        assert ctx["run_id"] == second != first

    def test_text_format_accepted(self):
        assert configure_logging(_settings(level="DEBUG", format="text"))

    def test_json_output_goes_to_stderr(self, capsys):
        configure_logging(_settings(format="json"))
        get_logger(__name__).info("writer started", batch_size=3)
        captured = capsys.readouterr()
        assert captured.out == ""
        assert '"event": "writer started"' in captured.err
        assert '"batch_size": 3' in captured.err

    def test_level_filters_debug(self, capsys):
        configure_logging(_settings(level="WARNING"))
        get_logger(__name__).info("quiet")
        assert "quiet" not in capsys.readouterr().err


class TestGetLogger:
    def test_capture_logs_records_events(self):
        configure_logging(_settings())
        with structlog.testing.capture_logs() as events:
            get_logger(__name__).info("batch flushed", records=42)
        assert len(events) == 1
        assert events[0]["event"] == "batch flushed"
        assert events[0]["records"] == 42
        assert events[0]["log_level"] == "info"


class TestStdlibBridge:
    def test_stdlib_records_rendered_as_json(self, capsys):
        configure_logging(_settings(format="json"))
        logging.getLogger("uvicorn.error").warning("port %d in use", 8080)
        err = capsys.readouterr().err
        assert '"event": "port 8080 in use"' in err
        assert '"logger": "uvicorn.error"' in err
        assert '"run_id"' in err

    def test_reconfigure_does_not_stack_handlers(self):
        configure_logging(_settings())
        configure_logging(_settings())
        names = [h.get_name() for h in logging.getLogger().handlers]
        assert names.count("waypoint-structlog") == 1

    def test_httpx_quieted_at_info(self):
        configure_logging(_settings(level="INFO"))
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_structlog_events_carry_module_name(self, capsys):
        configure_logging(_settings(format="json"))
        get_logger("waypoint.writer").info("writer started")
        assert '"logger": "waypoint.writer"' in capsys.readouterr().err

    def test_module_loggers_resolve_at_import(self):
        # Module-level loggers are created before configure_logging runs.
        import waypoint.app
        import waypoint.cli
        import waypoint.writer

        for module in (waypoint.app, waypoint.cli, waypoint.writer):
            assert module._log is not None

    def test_logger_name_key_renamed_on_output(self, capsys):
        configure_logging(_settings(format="json"))
        get_logger("waypoint.app").info("app ready")
        err = capsys.readouterr().err
        assert '"logger": "waypoint.app"' in err
        assert "logger_name" not in err


class TestCapturedName:
    def test_capture_logs_sees_bound_name(self):
        configure_logging(_settings())
        with structlog.testing.capture_logs() as events:
            get_logger("waypoint.ingest").info("accepted")
        assert events[0]["logger_name"] == "waypoint.ingest"
