"""
Structured logging for the computed-field engine.

Manifesto:
    Cascading recomputation is hard to debug without correlation ids. Every
    log event from the planner, queue and worker is a structlog event with
    key/value fields, and workers bind ``task_id``/``run_id``/``worker_id``
    for the duration of a task so downstream events inherit them.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="tablespine")
            │
            ▼
        structlog processor chain:
            1. merge_contextvars   (task_id, run_id, worker_id)
            2. add_log_level, logger name bound at get_logger()
            3. TimeStamper(iso)
            4. add_service_metadata
            5. JSONRenderer (not a tty) or ConsoleRenderer (tty)

Examples:
    >>> from tablespine.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> logger.info("outbox_task_enqueued", task_id="t1", steps=3)

Tags:
    logging, structlog, observability, tablespine
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "tablespine"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "tablespine",
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name included in every event
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]
    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind keys to every later event of the current thread or task."""
    structlog.contextvars.bind_contextvars(**kwargs)


class LogContext:
    """Bind task correlation ids for the duration of a block.

    ``None`` values are skipped, so optional ids never show up as nulls::

        with LogContext(task_id=task.id, run_id=task.run_id, worker_id=worker_id):
            logger.info("outbox_task_started")
    """

    def __init__(self, **kwargs: Any):
        self._context = {k: v for k, v in kwargs.items() if v is not None}
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = [
    "LogContext",
    "bind_context",
    "configure_logging",
    "get_logger",
]
