"""Tests for structured logging output."""

import io
import json
import logging
import sys
from datetime import UTC, datetime

import pytest

from activity_ledger.output import ColoredConsoleHandler, StructuredFormatter, setup_logging


def make_record(level: int = logging.INFO, msg: str = "Imported 3 of 3 fact(s)", **extra):
    record = logging.LogRecord("activity_ledger.importer", level, __file__, 42, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_json_includes_structured_fields(self) -> None:
        formatter = StructuredFormatter(use_json=True, host_info={"app": "menubar"})
        record = make_record(watermark=datetime(2025, 1, 1, 9, tzinfo=UTC), appended=3)

        data = json.loads(formatter.format(record))

        assert data["message"] == "Imported 3 of 3 fact(s)"
        assert data["level"] == "INFO"
        assert data["watermark"] == "2025-01-01T09:00:00+00:00"
        assert data["appended"] == "3"
        assert data["host"] == {"app": "menubar"}
        assert "session_id" not in data

    def test_human_format(self) -> None:
        text = StructuredFormatter().format(make_record(session_id="s1", watermark=None))
        assert "INFO" in text
        assert text.endswith("Imported 3 of 3 fact(s) (session_id=s1)")

    def test_exception_text(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(logging.ERROR, "failed")
            record.exc_info = sys.exc_info()
        data = json.loads(StructuredFormatter(use_json=True).format(record))
        assert "RuntimeError: boom" in data["exception"]


class TestColoredConsoleHandler:
    def test_writes_to_stream(self) -> None:
        stream = io.StringIO()
        handler = ColoredConsoleHandler(stream)
        handler.setFormatter(StructuredFormatter())
        handler.emit(make_record(logging.WARNING, "careful"))
        handler.emit(make_record(logging.DEBUG, "quiet"))

        output = stream.getvalue()
        assert "careful" in output
        assert "quiet" in output


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_file_and_console_handlers(self, tmp_path, restore_root_logger) -> None:
        log_file = tmp_path / "ledger.log"
        setup_logging(json_format=True, log_file=str(log_file))

        root = restore_root_logger
        assert len(root.handlers) == 2
        logging.getLogger("activity_ledger.test").info("hello", extra={"appended": 1})
        for handler in root.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().splitlines()[-1])
        assert line["message"] == "hello"
        assert line["appended"] == "1"

    def test_console_can_be_disabled(self, restore_root_logger) -> None:
        setup_logging(console_log_level=0)
        assert restore_root_logger.handlers == []
