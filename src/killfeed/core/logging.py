"""
Killfeed Structured Logging

Every killfeed component logs through get_logger(), which attaches one shared
stderr handler and takes its level from KillfeedSettings. Output is either a
single human-readable line per record or, with KILLFEED_LOG_JSON set, a JSON
object carrying every ``extra=`` field (event, kill_id, service, attempt, ...).

Usage:
    from killfeed.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Backfill complete", extra={"event": "backfill_complete", "entity_id": 90000001})
    logger.warning("Retrying %s (attempt %d/%d)", description, attempt, max_attempts)

Environment Variables:
    KILLFEED_LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR)
    KILLFEED_DEBUG: Legacy - if set, enables DEBUG level
    KILLFEED_LOG_JSON: If set, output JSON-formatted logs
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

from .config import get_settings

ROOT_LOGGER_NAME = "killfeed"

# LogRecord attributes that are never copied into JSON output
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    }
)


class KillfeedFormatter(logging.Formatter):
    """
    Formatter for killfeed logs.

    Text form: ``[KILLFEED LEVEL] [module] message``.
    JSON form: timestamp, level, logger, message plus extra fields.
    """

    def __init__(self, json_output: bool = False) -> None:
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        module = record.name.rsplit(".", 1)[-1]
        msg = f"[KILLFEED {record.levelname}] [{module}] {record.getMessage()}"
        if record.exc_info:
            msg += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return msg

    def _format_json(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="seconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


# Module-level logger cache
_loggers: dict[str, logging.Logger] = {}
_handler: Optional[logging.Handler] = None


def _get_handler() -> logging.Handler:
    """Get or create the shared stderr handler."""
    global _handler
    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(KillfeedFormatter(json_output=get_settings().log_json))
    return _handler


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(get_settings().log_level_int)
    logger.addHandler(_get_handler())
    logger.propagate = False

    _loggers[name] = logger
    return logger


def set_log_level(level: int) -> None:
    """
    Dynamically set log level for all killfeed loggers.

    Args:
        level: logging.DEBUG, logging.INFO, etc.
    """
    for logger in _loggers.values():
        logger.setLevel(level)


def debug_enabled() -> bool:
    """Check if debug logging is enabled (for guarding expensive log arguments)."""
    return get_settings().log_level_int <= logging.DEBUG


def reset_logging() -> None:
    """
    Reset all killfeed loggers to default state.

    Restores propagate=True and level NOTSET on every ``killfeed.*`` logger known
    to the logging manager (including ones created with logging.getLogger) and
    drops the shared handler. The logger cache is kept, so a later get_logger()
    for the same name does not re-detach it from the root logger. Used by test
    fixtures so that caplog sees records and state does not leak between tests.
    """
    global _handler

    manager = logging.Logger.manager
    for name, logger in list(manager.loggerDict.items()):
        if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
            if isinstance(logger, logging.Logger):
                if _handler is not None:
                    logger.removeHandler(_handler)
                logger.propagate = True
                logger.setLevel(logging.NOTSET)

    _handler = None
