"""
Structured logging, correlation IDs and timing for the sync engine.

Every sync run and every scheduled job runs inside its own correlation
context, so all log lines (and events) of one run share an ID.

Usage:
    from possync.observability import setup_logging, get_logger, correlation_context

    setup_logging()                      # once, at startup
    logger = get_logger(__name__)

    with correlation_context() as run_id:
        logger.info("Sync started", extra={"units": 12})
"""
import json
import logging
import logging.config
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("possync_correlation_id", default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Third-party loggers that are only interesting when debugging them
_QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "asyncio")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID (a new one by default) for the enclosed block."""
    cid = correlation_id or generate_correlation_id()
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message, correlation_id, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = get_correlation_id()
        if cid:
            entry["correlation_id"] = cid
        entry.update(_extras(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Console format.

    ``2024-03-15 10:00:00 - INFO     - possync.sync_service [1a2b3c4d] - Sync complete | synced=3 failed=0``
    """

    def format(self, record: logging.LogRecord) -> str:
        cid = get_correlation_id()
        parts = [
            _record_time(record).strftime("%Y-%m-%d %H:%M:%S"),
            f"{record.levelname:<8}",
            f"{record.name} [{cid}]" if cid else record.name,
            record.getMessage(),
        ]
        line = " - ".join(parts)

        extras = _extras(record)
        if extras:
            line += " | " + " ".join(f"{key}={value}" for key, value in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", json_format: bool = False, include_libs: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_format: Emit JSON lines instead of the console format
        include_libs: Keep httpx/apscheduler logging at the root level
    """
    level_name = level.upper() if isinstance(logging.getLevelName(level.upper()), int) else "INFO"
    formatter = StructuredFormatter if json_format else HumanReadableFormatter

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"()": formatter}},
        "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "default"}},
        "root": {"level": level_name, "handlers": ["console"]},
        "loggers": {} if include_libs else {
            name: {"level": "WARNING"} for name in _QUIET_LOGGERS
        },
    })


class Timer:
    """
    Measures a block and logs its duration.

    Blocks slower than ``warn_ms`` are logged at WARNING, the rest at DEBUG.

        with Timer("fetch_sales-summary", logger) as t:
            payload = await client.fetch(...)
        t.elapsed_ms
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, warn_ms: float = 5000):
        self.name = name
        self.logger = logger
        self.warn_ms = warn_ms
        self.elapsed_ms: float = 0.0
        self._started_ns = 0

    def __enter__(self) -> "Timer":
        self._started_ns = time.perf_counter_ns()
        return self

    def __exit__(self, *exc_info) -> None:
        self.elapsed_ms = (time.perf_counter_ns() - self._started_ns) / 1_000_000
        if self.logger is None:
            return
        slow = self.elapsed_ms > self.warn_ms
        self.logger.log(
            logging.WARNING if slow else logging.DEBUG,
            f"{self.name} {'slow' if slow else 'completed'}",
            extra={"duration_ms": round(self.elapsed_ms, 2)},
        )
