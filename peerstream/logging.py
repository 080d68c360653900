"""
Logging setup for peerstream.

Everything logs under the "peerstream" logger. configure_logging() installs a
stderr handler (plus an optional rotating file) with a text or JSON formatter
and, unless disabled, a filter that masks credentials in messages and in the
structured ``context`` extra. Stream text is never masked: chunks are called
tokens on the wire, so only credential-style names count as secrets.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Mapping, MutableMapping, Optional

ROOT_LOGGER = "peerstream"
PREVIEW_CHARS = 256
REDACTED = "[REDACTED]"

_FORMATS = ("text", "json")
_TEXT_LAYOUT = "%(levelname)s %(name)s: %(message)s"
_FILE_MAX_BYTES = 10 * 1024 * 1024
_FILE_BACKUPS = 3


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None
    redact: bool = True


_SECRET_KEY = re.compile(
    r"access_?token|auth_?token|api_?key|authorization|bearer|password|private_key|secret",
    flags=re.IGNORECASE,
)

_SECRET_ASSIGNMENT = re.compile(
    r"(?P<key>api[_-]?key|access[_-]?token|auth[_-]?token|password|secret|authorization)"
    r"\s*[:=]\s*[^\s,;]+",
    flags=re.IGNORECASE,
)


def preview(value: Any, limit: int = PREVIEW_CHARS) -> str:
    """Short printable form of a peer payload for log lines."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        text = bytes(value).decode("utf-8", errors="replace")
    else:
        text = value if isinstance(value, str) else repr(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``context`` is carried through as-is."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class RedactionFilter(logging.Filter):
    """Masks credentials in the message and in the ``context`` extra."""

    def __init__(self, *, max_depth: int = 4):
        super().__init__()
        self._max_depth = max_depth

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask_text(record.msg)
        context = getattr(record, "context", None)
        if isinstance(context, MutableMapping):
            record.context = self._scrub(context, 0)
        return True

    @staticmethod
    def _mask_text(text: str) -> str:
        return _SECRET_ASSIGNMENT.sub(lambda m: f"{m.group('key')}={REDACTED}", text)

    def _scrub(self, value: Any, depth: int) -> Any:
        if depth > self._max_depth or isinstance(value, bytes):
            return REDACTED
        if isinstance(value, str):
            return self._mask_text(value)
        if isinstance(value, Mapping):
            return {
                k: REDACTED if isinstance(k, str) and _SECRET_KEY.search(k) else self._scrub(v, depth + 1)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._scrub(v, depth + 1) for v in value]
        return value


def load_logging_options_from_env() -> LoggingOptions:
    """Read PEERSTREAM_LOG_LEVEL/FORMAT/FILE/REDACT ("0" or "false" disables redaction)."""
    return LoggingOptions(
        level=os.getenv("PEERSTREAM_LOG_LEVEL", "INFO"),
        format=os.getenv("PEERSTREAM_LOG_FORMAT", "text"),
        file=os.getenv("PEERSTREAM_LOG_FILE"),
        redact=os.getenv("PEERSTREAM_LOG_REDACT", "1").lower() not in ("0", "false"),
    )


def _formatter(fmt: str, *, with_time: bool) -> logging.Formatter:
    fmt = fmt.strip().lower()
    if fmt not in _FORMATS:
        raise ValueError(f"Invalid log format: {fmt}")
    if fmt == "json":
        return JSONFormatter()
    return logging.Formatter(f"%(asctime)s {_TEXT_LAYOUT}" if with_time else _TEXT_LAYOUT)


def _attach(logger: logging.Logger, handler: logging.Handler, options: LoggingOptions, *, with_time: bool) -> None:
    handler.setFormatter(_formatter(options.format, with_time=with_time))
    if options.redact:
        handler.addFilter(RedactionFilter())
    logger.addHandler(handler)


def configure_logging(options: LoggingOptions) -> logging.Logger:
    """Configure the "peerstream" logger; repeated calls replace its handlers."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, options.level.strip().upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    _attach(logger, logging.StreamHandler(sys.stderr), options, with_time=False)
    if options.file:
        file_handler = RotatingFileHandler(options.file, maxBytes=_FILE_MAX_BYTES, backupCount=_FILE_BACKUPS)
        _attach(logger, file_handler, options, with_time=True)
    return logger
