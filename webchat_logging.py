"""Logging for browser-mode runs.

The core modules report progress through a plain ``Callable[[str], None]``
sink so tests can capture lines without touching logging config. The CLI
routes that sink into the ``webchat`` logger, which writes to stderr with
API keys and session cookies scrubbed.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Callable, Optional, Sequence

from webchat_config import LOG_REDACT_PATTERNS

BrowserLogger = Callable[[str], None]

LOGGER_NAME = "webchat"
REDACTED = "[REDACTED]"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def redact_string(text: str, patterns: Sequence[str]) -> str:
    """Replace every match of ``patterns`` in ``text`` with [REDACTED].

    Invalid patterns are skipped so one bad override cannot silence logging.
    """
    for pattern in patterns:
        try:
            text = re.sub(pattern, REDACTED, text)
        except re.error:
            continue
    return text


class RedactingFilter(logging.Filter):
    """Scrubs secrets from the message, its string args and any traceback text."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self.patterns = list(patterns)

    def _scrub(self, value):
        return redact_string(value, self.patterns) if isinstance(value, str) else value

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.patterns:
            return True
        record.msg = redact_string(str(record.msg), self.patterns)
        if isinstance(record.args, tuple):
            record.args = tuple(self._scrub(a) for a in record.args)
        if record.exc_text:
            record.exc_text = redact_string(record.exc_text, self.patterns)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for --json-log."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(
    verbose: bool = False,
    json_log: bool = False,
    patterns: Optional[Sequence[str]] = None,
) -> logging.Handler:
    """Install one stderr handler on the root logger. Stdout is for results."""
    handler = logging.StreamHandler()
    if json_log:
        handler.setFormatter(JsonFormatter(datefmt=_DATEFMT))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt=_DATEFMT))
    handler.addFilter(RedactingFilter(LOG_REDACT_PATTERNS if patterns is None else patterns))
    handler.set_name(LOGGER_NAME)

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == LOGGER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return handler


def logger_sink(name: str = LOGGER_NAME, level: int = logging.INFO) -> BrowserLogger:
    """Progress sink that forwards each line to the named logger."""
    target = logging.getLogger(name)

    def _sink(message: str) -> None:
        target.log(level, "%s", message)

    return _sink
