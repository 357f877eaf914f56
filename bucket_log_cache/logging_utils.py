"""
Structured JSON logging for the log cache.

Every record becomes one JSON line. Context such as ``log_id`` and
``bucket`` travels in ``extra`` and ends up as top-level fields, so
pagination passes can be followed per log in an aggregator.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

PACKAGE_LOGGER = "bucket_log_cache"

# Attributes every LogRecord carries; anything else came from ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats records as single-line JSON objects.

    Fields: ``timestamp`` (UTC, ISO 8601, taken from the record),
    ``level``, ``logger``, ``message``, ``exception`` when present, plus
    every context field passed through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            entry[key] = value

        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Send a logger's output as JSON lines to a stream.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            None for the root logger)
        stream: Destination (default: stdout)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    # Reconfiguring replaces rather than stacks handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_cache_logger(name: str) -> logging.Logger:
    """Logger for a cache component, e.g. ``get_cache_logger("sync")``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class CacheLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps every record with fixed context, typically the log being synced.

    Example:
        >>> log = CacheLoggerAdapter(logger, {"log_id": "conv-1"})
        >>> log.info("listed bucket", extra={"bucket": 4})
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
