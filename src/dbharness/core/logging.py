"""
Structured logging for dbharness.

Lifecycle runs are usually driven from CI or a test session, so the same
events need to read well in a terminal and be machine-parseable in build
logs. ``configure_logging`` sets up structlog for both: coloured console
output on a TTY, JSON (with ECS-compatible field names) everywhere else.

Harness errors passed as event values are expanded through
``HarnessError.to_dict()``, so a detach failure logs its category, catalog
and suppressed errors instead of a bare message.

Usage:
    >>> from dbharness.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> log = get_logger(__name__)
    >>> log.info("lifecycle.transition", catalog="Northwind", state="attached")

    Everything logged inside a provisioning run carries the catalog:

    >>> with LogContext(catalog="Northwind"):
    ...     log.info("deploy.started")

Tags:
    logging, structlog, observability, json-logging, dbharness
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from dbharness.core.errors import ConfigurationError, HarnessError

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# structlog key -> ECS field name
_ECS_FIELDS = {"timestamp": "@timestamp", "level": "log.level"}


class _ServiceMetadata:
    """Stamps ``service.name`` on every event."""

    def __init__(self, service: str) -> None:
        self.service = service

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", self.service)
        return event_dict


def _expand_harness_errors(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, value in list(event_dict.items()):
        if isinstance(value, HarnessError):
            event_dict[key] = value.to_dict()
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Rename structlog's keys to their ECS equivalents."""
    for key, ecs_key in _ECS_FIELDS.items():
        if key in event_dict:
            event_dict[ecs_key] = event_dict.pop(key)
    return event_dict


def _resolve_level(level: str) -> int:
    name = level.strip().upper()
    if name not in _LEVELS:
        raise ConfigurationError(f"Unknown log level {level!r}; expected one of {', '.join(_LEVELS)}")
    return getattr(logging, name)


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "dbharness",
    add_timestamp: bool = True,
) -> None:
    """Configure structlog (and the stdlib root logger) for a harness run.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: True for JSON, False for console, None to pick JSON
            whenever stdout is not a terminal
        service: Value of ``service.name`` on every event
        add_timestamp: Prefix events with an ISO timestamp
    """
    numeric_level = _resolve_level(level)
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = []
    if add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))
    processors += [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _ServiceMetadata(service),
        _expand_harness_errors,
    ]

    if json_format:
        processors += [
            _elasticsearch_compatible,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # SQLAlchemy and the driver log through the stdlib
    logging.basicConfig(format="%(name)s: %(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Structured logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)


class LogContext:
    """Binds context for the ``with`` block, then restores what was there.

    Nested scopes restore the outer value on exit:

        with LogContext(catalog="Northwind"):
            with LogContext(catalog="master"):
                ...
            log.info("back.on.northwind")
    """

    def __init__(self, **kwargs: Any) -> None:
        self._values = kwargs
        self._tokens: Mapping[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._values)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = [
    "LogContext",
    "configure_logging",
    "get_logger",
]
