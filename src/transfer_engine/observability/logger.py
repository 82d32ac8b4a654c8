"""Structured logging with operation_id support.

Uses structlog for structured output (JSON or console).  Every log entry
emitted while a lifecycle operation runs carries that operation's
``operation_id`` and name, so the lines of one transaction correlate.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

from transfer_engine.core.ids import new_id

# Context vars for operation correlation
_operation_id: ContextVar[str] = ContextVar("operation_id", default="")
_operation_name: ContextVar[str] = ContextVar("operation_name", default="")


def get_operation_id() -> str:
    """Current operation ID, or ``""`` outside any operation."""
    return _operation_id.get()


@contextmanager
def operation_scope(name: str, operation_id: str | None = None) -> Iterator[str]:
    """Bind a fresh operation ID (and *name*) for the duration of the block."""
    oid = operation_id or new_id()
    id_token = _operation_id.set(oid)
    name_token = _operation_name.set(name)
    try:
        yield oid
    finally:
        _operation_name.reset(name_token)
        _operation_id.reset(id_token)


def _add_operation(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add operation_id / operation to every entry."""
    oid = _operation_id.get()
    if oid:
        event_dict["operation_id"] = oid
        event_dict["operation"] = _operation_name.get()
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the engine.

    Standard-library loggers (``logging.getLogger(__name__)``) are routed
    through the same processor chain via ``ProcessorFormatter``.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_operation,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a module."""
    return structlog.get_logger(name)
