"""Unit tests for JSON log formatting."""

from __future__ import annotations

import json
import logging
import sys

from workflow_semaphore.log import JsonFormatter, configure_logging, execution_id_ctx


def make_record(msg: str, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="workflow_semaphore.acquire",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJsonFormatter:
    """Tests for structured log lines."""

    def test_fields(self) -> None:
        """Test that a record renders as one JSON object."""
        line = json.loads(JsonFormatter().format(make_record("store throttled")))

        assert line["level"] == "WARNING"
        assert line["message"] == "store throttled"
        assert line["logger"] == "workflow_semaphore.acquire"
        assert line["execution_id"] is None
        assert "exception" not in line

    def test_execution_id(self) -> None:
        """Test that the running execution's id is attached."""
        token = execution_id_ctx.set("Semaphore:run-1")
        try:
            line = json.loads(JsonFormatter().format(make_record("waiting")))
        finally:
            execution_id_ctx.reset(token)

        assert line["execution_id"] == "Semaphore:run-1"

    def test_exception(self) -> None:
        """Test that exception text is included."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()

        line = json.loads(JsonFormatter().format(make_record("failed", exc_info)))
        assert "RuntimeError: boom" in line["exception"]


class TestConfigureLogging:
    """Root logger setup."""

    def test_installs_json_handler(self, root_logger: logging.Logger) -> None:
        """Test that the root logger gets a JSON handler at the given level."""
        configure_logging("DEBUG")

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JsonFormatter)

    def test_repeated_setup(self, root_logger: logging.Logger) -> None:
        """Test that configuring twice changes the level but adds no handler."""
        configure_logging("DEBUG")
        configure_logging("WARNING")

        assert root_logger.level == logging.WARNING
        assert len(root_logger.handlers) == 1
