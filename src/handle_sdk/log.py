"""Structured logging setup shared by the SDK and the CLI."""

from __future__ import annotations

import json
import logging
import sys
import time

ROOT_LOGGER_NAME = "handle_sdk"
_HANDLER_MARK = "_handle_sdk_handler"


class JSONLineFormatter(logging.Formatter):
    """One JSON object per record; UTC timestamps."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%SZ")

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: int | str = logging.WARNING, *, stream=None) -> logging.Logger:
    """Install a single JSON-line handler on the package logger.

    Calling this more than once only updates the level and, when given, the
    output stream.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level}")
        level = resolved
    logger.setLevel(level)

    handler = next((h for h in logger.handlers if getattr(h, _HANDLER_MARK, False)), None)
    if handler is not None:
        if stream is not None:
            handler.setStream(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        setattr(handler, _HANDLER_MARK, True)
        handler.setFormatter(JSONLineFormatter())
        logger.addHandler(handler)
        logger.propagate = False
    return logger

