"""
Logging utilities for the ingestion and vector pipelines.

Provides structured logging with correlation ID support for tracing a run
across stages (ingest run -> partition -> page, index run -> shard,
query -> shard scan).
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


CORRELATION_FIELDS = ("run_id", "partition", "query_id", "shard_id", "worker_id", "stage")

PIPELINE_LOGGERS = ("ingest", "vector")


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.

    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (run_id, partition, query_id, ...)
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with correlation context.

    Format: TIMESTAMP [LEVEL] LOGGER - MESSAGE [run_id=X partition=Y]
    """

    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
        else:
            fmt = "[%(levelname)s] %(name)s - %(message)s"
        super().__init__(fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        context_parts = []
        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")

        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


class CorrelationFilter(logging.Filter):
    """Copies the active CorrelationContext onto every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in CorrelationContext.get_current().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


def configure_logging(
    verbose: bool = False,
    structured: bool = False,
    logger_names: Iterable[str] = PIPELINE_LOGGERS,
    stream=None,
) -> None:
    """
    Configure the pipeline loggers.

    Args:
        verbose: Log at DEBUG instead of INFO
        structured: If True, output JSON-structured logs; if False, human-readable
        logger_names: Top-level logger names to configure
        stream: Output stream (default: stderr)

    Example:
        >>> configure_logging(verbose=True, structured=True)
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = StructuredFormatter() if structured else HumanReadableFormatter()

    for name in logger_names:
        pipeline_logger = logging.getLogger(name)
        pipeline_logger.setLevel(level)

        # Only add handler if none exist (avoid duplicate handlers)
        if not pipeline_logger.handlers:
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setLevel(level)
            handler.setFormatter(formatter)
            handler.addFilter(CorrelationFilter())
            pipeline_logger.addHandler(handler)


class CorrelationContext:
    """
    Context manager for adding correlation fields to log records.

    Contexts are tracked per thread so that concurrent ingestion workers do
    not see each other's fields.

    Example:
        >>> with CorrelationContext(run_id="abc", partition="character#1/endpoint#comics"):
        ...     logger.info("Fetching page")  # Will include run_id and partition
    """

    _local = threading.local()

    def __init__(self, **fields: Any):
        self.context = {k: v for k, v in fields.items() if v is not None}
        self._previous: Optional[Dict[str, Any]] = None

    def __enter__(self) -> "CorrelationContext":
        self._previous = getattr(CorrelationContext._local, "context", None)
        merged = dict(self._previous or {})
        merged.update(self.context)
        CorrelationContext._local.context = merged
        return self

    def __exit__(self, *args) -> None:
        CorrelationContext._local.context = self._previous

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Get the current correlation context."""
        context = getattr(cls._local, "context", None)
        return dict(context) if context else {}
