"""Tests for structured logging setup."""

import io
import json
import logging
import sys

from provisioner.logging_setup import JsonFormatter, setup_logging


class TestJsonFormatter:
    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord("provisioner.executor", logging.INFO, __file__, 1, "Change applied", None, None)
        record.resource = "aws_vpc.main"
        record.attempts = 2

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Change applied"
        assert data["level"] == "INFO"
        assert data["logger"] == "provisioner.executor"
        assert data["resource"] == "aws_vpc.main"
        assert data["attempts"] == 2
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data

    def test_exception_info(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


class TestSetupLogging:
    def test_writes_json_lines(self) -> None:
        stream = io.StringIO()
        handler = setup_logging(stream=stream)
        try:
            logging.getLogger("provisioner.test").info("hello", extra={"stage": 1})
        finally:
            logging.getLogger().removeHandler(handler)

        line = stream.getvalue().strip().splitlines()[-1]
        assert json.loads(line)["stage"] == 1
