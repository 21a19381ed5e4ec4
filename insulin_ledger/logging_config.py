"""Structured logging.

Log lines carry the service name, the correlation ID of the operation
that emitted them (one per pump history read) and any keyword fields
passed to the ``StructuredLogger`` methods.
"""

import json
import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from insulin_ledger.config import settings

# Correlation ID of the ingestion or export currently running in this context
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Libraries whose INFO output drowns out ledger events
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite")


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with a fresh correlation ID."""
    correlation_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
    token = correlation_id_ctx.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_ctx.reset(token)


class _LedgerFormatter(logging.Formatter):
    """Shared plumbing for the JSON and text formatters."""

    def __init__(self, service_name: str | None = None):
        super().__init__()
        self.service_name = service_name or settings.service_name

    @staticmethod
    def record_time(record: logging.LogRecord) -> datetime:
        return datetime.fromtimestamp(record.created, UTC)

    @staticmethod
    def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
        return getattr(record, "extra_fields", None) or {}


class JsonFormatter(_LedgerFormatter):
    """One JSON object per line.

    Keys: ``timestamp`` (ISO 8601, UTC), ``level``, ``service``,
    ``message``, ``logger``, ``correlation_id`` when one is set, the
    record's extra fields, ``exception`` when present and ``location``
    for ERROR and above.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.record_time(record).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if correlation_id := correlation_id_ctx.get():
            entry["correlation_id"] = correlation_id
        entry.update(self.extra_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.levelno >= logging.ERROR:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        return json.dumps(entry, default=str)


class TextFormatter(_LedgerFormatter):
    """``time - service - LEVEL - [correlation] - message key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = self.record_time(record).strftime("%Y-%m-%d %H:%M:%S")
        parts = [
            f"{stamp} - {self.service_name} - {record.levelname} - "
            f"[{correlation_id_ctx.get() or '-'}] - {record.getMessage()}"
        ]
        parts.extend(f"{key}={value}" for key, value in self.extra_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    service_name: str | None = None,
) -> None:
    """Install a single stdout handler on the root logger.

    Arguments left as ``None`` fall back to the ``INSULIN_LEDGER_LOG_*``
    settings.

    Args:
        log_format: 'json' for structured logging, 'text' for human-readable
        log_level: Logging level name, case-insensitive
        service_name: Service name to include in every line
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    if (log_format or settings.log_format).lower() == "json":
        formatter: logging.Formatter = JsonFormatter(service_name)
    else:
        formatter = TextFormatter(service_name)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class StructuredLogger:
    """``logging.Logger`` facade taking structured fields as keywords.

    ``logger.info("Purged ledger rows", ledger="carb_entries", count=3)``
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def log(self, level: int, msg: str, *, exc_info: bool = False, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {"extra_fields": fields} if fields else None
        # Attribute the record to the caller, not this wrapper
        self._logger.log(level, msg, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, **fields: Any) -> None:
        self.log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self.log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self.log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self.log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self.log(logging.ERROR, msg, exc_info=True, **fields)


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for ``name`` (typically ``__name__``)."""
    return StructuredLogger(name)
