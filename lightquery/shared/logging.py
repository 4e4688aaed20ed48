"""
Shared logging configuration for lightquery.
"""

import sys
import structlog
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Protocol
from contextvars import ContextVar

# Serialized key of the query whose operation is currently running
query_key_var: ContextVar[Optional[str]] = ContextVar('query_key', default=None)


def configure_logging(log_level: str = "info", json_output: bool = True) -> None:
    """Configure structured logging for the engine."""

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_query_context,
            add_timestamp,
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_query_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the running query's key to log events."""
    query_key = query_key_var.get()
    if query_key and "query_key" not in event_dict:
        event_dict["query_key"] = query_key
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


@contextmanager
def query_context(query_key: str) -> Iterator[None]:
    """Bind a query key to log events emitted inside the block."""
    token = query_key_var.set(query_key)
    try:
        yield
    finally:
        query_key_var.reset(token)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LoggerSink(Protocol):
    """Destination for engine warnings and errors."""

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        ...

    def error(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        ...


class StructlogSink:
    """Logger sink backed by a structlog logger."""

    def __init__(self, name: str = "lightquery"):
        self.logger = get_logger(name)

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self.logger.warning(message, **(meta or {}))

    def error(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self.logger.error(message, **(meta or {}))


class NullSink:
    """Logger sink that drops everything."""

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        return None

    def error(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        return None
