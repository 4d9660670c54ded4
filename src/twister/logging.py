"""Logging configuration for twister.

Every module gets its logger through `get_logger(__name__)` and passes
structured fields through `extra`. The formatter renders those fields as
`key=value` pairs after the message.

Usage:
    from twister.logging import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Batch complete", extra={"channel_id": "C123", "items": 50})
"""

import logging
import sys
from collections.abc import Callable
from typing import Any

from twister.constants import LOG_DATE_FORMAT, LOG_FORMAT

# Attributes every LogRecord carries; anything else came from `extra`.
_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Formatter that appends `extra` fields to the rendered message."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record with its structured fields.

        Args:
            record: The log record to format.

        Returns:
            Formatted log string.
        """
        base_message = super().format(record)

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not fields:
            return base_message

        rendered = " | ".join(f"{key}={value}" for key, value in fields.items())
        return f"{base_message} | {rendered}"


def setup_logging(
    level: int = logging.INFO,
    *,
    include_timestamp: bool = True,
) -> None:
    """Configure the root logger with a single stderr handler.

    Args:
        level: The logging level (default: INFO).
        include_timestamp: Whether to include timestamps in output.
    """
    if include_timestamp:
        formatter = StructuredFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    else:
        formatter = StructuredFormatter("%(levelname)-8s | %(name)s | %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("twister").setLevel(level)

    # Provider calls are logged by the sources themselves
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module.

    Args:
        name: The module name (typically __name__).

    Returns:
        A Logger instance.
    """
    return logging.getLogger(name)


class LogContext:
    """Context manager that stamps fields on every record created inside it.

    The sync engine wraps each batch in one so that provider calls and
    per-item warnings carry the source, channel and batch number. Field
    names must not collide with keys passed through `extra` inside the
    block, since logging refuses to overwrite record attributes.

    Usage:
        with LogContext(logger, sync_source="github", sync_channel="acme/api"):
            logger.info("Fetching page")
            # ... | sync_source=github | sync_channel=acme/api
    """

    def __init__(self, logger: logging.Logger, **fields: Any) -> None:
        self.logger = logger
        self.fields = fields
        self._old_factory: Callable[..., logging.LogRecord] | None = None

    def __enter__(self) -> "LogContext":
        old_factory = logging.getLogRecordFactory()
        self._old_factory = old_factory
        fields = self.fields

        def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = old_factory(*args, **kwargs)
            for key, value in fields.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._old_factory is not None:
            logging.setLogRecordFactory(self._old_factory)
            self._old_factory = None
