"""Tests for webchat_logging module."""

import io
import json
import logging
import sys

import pytest

from webchat_config import LOG_REDACT_PATTERNS
from webchat_logging import JsonFormatter, RedactingFilter, logger_sink, redact_string, setup_logging


class TestRedactString:
    def test_redacts_anthropic_api_key(self) -> None:
        text = "Using key sk-ant-REDACTED for vision"
        result = redact_string(text, LOG_REDACT_PATTERNS)
        assert "sk-ant-" not in result
        assert "[REDACTED]" in result
        assert "for vision" in result

    def test_redacts_chatgpt_session_cookie(self) -> None:
        text = "cookie __Secure-next-auth.session-token=eyJhbGciOi.abc-def set"
        result = redact_string(text, LOG_REDACT_PATTERNS)
        assert "eyJhbGciOi" not in result
        assert result.endswith(" set")

    def test_redacts_generic_session_token(self) -> None:
        result = redact_string('{"session_token": "abc.def"}', LOG_REDACT_PATTERNS)
        assert "abc.def" not in result

    def test_empty_patterns_no_op(self) -> None:
        text = "sk-ant-api03-secret"
        assert redact_string(text, []) == text

    def test_invalid_pattern_skipped(self) -> None:
        assert redact_string("sk-ant-x1", ["(unclosed", r"sk-ant-[\w-]+"]) == "[REDACTED]"


class TestRedactingFilter:
    def test_filter_redacts_args(self) -> None:
        filt = RedactingFilter(LOG_REDACT_PATTERNS)
        record = logging.LogRecord(
            name="test", level=logging.INFO, pathname="", lineno=0,
            msg="Key: %s", args=("sk-proj-secretkey123",),
            exc_info=None,
        )
        filt.filter(record)
        assert "sk-proj-" not in record.args[0]

    def test_filter_works_with_logging_module(self) -> None:
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.addFilter(RedactingFilter(LOG_REDACT_PATTERNS))
        test_logger = logging.getLogger("test_webchat_redact")
        test_logger.addHandler(handler)
        test_logger.setLevel(logging.INFO)
        try:
            test_logger.info("Vision key: sk-ant-api03-secret123")
        finally:
            test_logger.removeHandler(handler)
        assert "sk-ant-" not in stream.getvalue()
        assert "[REDACTED]" in stream.getvalue()


class TestJsonFormatter:
    def test_emits_json_line(self) -> None:
        record = logging.LogRecord(
            name="webchat", level=logging.WARNING, pathname="x.py", lineno=1,
            msg="Cleanup %s", args=("complete",), exc_info=None,
        )
        data = json.loads(JsonFormatter().format(record))
        assert data["level"] == "WARNING"
        assert data["message"] == "Cleanup complete"
        assert data["logger"] == "webchat"

    def test_includes_exception_text(self) -> None:
        try:
            raise RuntimeError("CDP socket closed")
        except RuntimeError:
            record = logging.LogRecord(
                name="webchat", level=logging.ERROR, pathname="x.py", lineno=1,
                msg="Failed", args=(), exc_info=sys.exc_info(),
            )
        data = json.loads(JsonFormatter().format(record))
        assert "CDP socket closed" in data["exc"]


class TestSetupLogging:
    def test_handler_redacts_and_is_removable(self) -> None:
        handler = setup_logging(json_log=True)
        stream = io.StringIO()
        handler.setStream(stream)
        try:
            logging.getLogger("webchat.setup").info("key sk-ant-api03-abc")
        finally:
            logging.getLogger().removeHandler(handler)
        line = json.loads(stream.getvalue().strip())
        assert line["message"] == "key [REDACTED]"


class TestLoggerSink:
    def test_forwards_to_named_logger(self, caplog: pytest.LogCaptureFixture) -> None:
        sink = logger_sink("webchat.test")
        with caplog.at_level(logging.INFO, logger="webchat.test"):
            sink("Launched Chrome (pid 1) on port 9222")
        assert "Launched Chrome (pid 1) on port 9222" in caplog.text
