"""
Structured logging module for tenant data access.

This module provides JSON-formatted logging with statement execution tracking
and connection pool statistics. All log output is in JSON format for easy
parsing and integration with log aggregation systems.

Example:
    >>> from tenantdb.logger import StructuredLogger
    >>> logger = StructuredLogger("tenantdb.executor")
    >>> logger.info("Statement executed", tenant="1", duration_ms=45.2, rows=10)
    {"timestamp": "2026-10-03T12:30:45.123456+00:00", "level": "INFO", ...}
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set


# Standard LogRecord attributes that should not be included as extra fields
_STANDARD_RECORD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}

# Extra fields whose name contains one of these markers are never written out
_SECRET_MARKERS = ("password", "secret", "token", "credentials")

REDACTED = "***"


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


class JsonFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-formatted log entries.

    Converts ``logging.LogRecord`` objects into JSON strings, including the
    standard fields (timestamp, level, message, module, function, line), any
    extra fields passed via ``extra``, and the formatted traceback when the
    record carries exception info. Extra fields named like secrets are
    replaced with ``"***"``.

    All timestamps are in ISO 8601 UTC format.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_ATTRS:
                continue
            log_data[key] = REDACTED if _is_secret(key) else value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        def json_serializer(obj):
            """Convert non-serializable objects to strings."""
            if hasattr(obj, "isoformat"):  # datetime, date, time objects
                return obj.isoformat()
            return str(obj)

        return json.dumps(log_data, default=json_serializer)


class StructuredLogger:
    """
    JSON-formatted structured logging for data-access operations.

    All log methods accept keyword arguments that are included as extra
    fields in the JSON output. The JSON handler is attached once per logger
    name, so components can create their own ``StructuredLogger`` freely.

    Attributes:
        logger: Underlying Python logger instance with JSON formatter

    Example:
        >>> logger = StructuredLogger("tenantdb.router")
        >>> logger.info("Engine created", tenant="1", address="db1:5432/app")
        >>> logger.error("Commit failed", tenant="2", kind="Timeout")
    """

    def __init__(self, name: str):
        self.logger: logging.Logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

        if not any(
            isinstance(handler.formatter, JsonFormatter) for handler in self.logger.handlers
        ):
            handler = logging.StreamHandler()
            handler.setFormatter(JsonFormatter())
            self.logger.addHandler(handler)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """
        Log ERROR level message with optional extra fields.

        Args:
            message: Log message
            **kwargs: Extra fields to include in JSON output
        """
        self.logger.error(message, extra=kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """
        Log ERROR level message with the active exception's traceback.

        Only meaningful inside an ``except`` block.

        Args:
            message: Log message
            **kwargs: Extra fields to include in JSON output
        """
        self.logger.error(message, exc_info=True, extra=kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self.logger.critical(message, extra=kwargs)
