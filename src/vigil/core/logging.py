"""
Structured logging for vigil.

Components log snake_case events with key/value fields::

    logger = get_logger(__name__)
    logger.info("step_completed", step_index=3, checkpoint_id="01J...")

A run that lasts a day is debugged from its logs afterwards, so when stderr
is not a terminal the output is one JSON object per line with ECS field
names (``@timestamp``, ``log.level``, ``service.name``). A terminal gets the
coloured console renderer instead.

Logs always go to stderr; stdout is reserved for command output such as
``--json``. ``task_id`` and ``step_index`` are bound through contextvars
(:func:`bind_context`, :class:`LogContext`) and appear on every line.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_ECS_FIELDS = {"timestamp": "@timestamp", "level": "log.level"}


def _service_metadata(service: str) -> Processor:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return add_service


def _rename_to_ecs(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for field, ecs_name in _ECS_FIELDS.items():
        if field in event_dict:
            event_dict[ecs_name] = event_dict.pop(field)
    return event_dict


def _processors(service: str, json_format: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _service_metadata(service),
    ]
    if json_format:
        chain += [structlog.processors.format_exc_info, _rename_to_ecs, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return chain


def configure_logging(level: str = "INFO", json_format: bool | None = None, service: str = "vigil") -> None:
    """Configure structlog (and stdlib logging) for the process.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: True for JSON, False for console, None to pick JSON
            when stderr is not a terminal
        service: Value of ``service.name`` on every line
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()
    numeric_level = getattr(logging, level.upper())

    structlog.configure(
        processors=_processors(service, json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    # Rendering is done by structlog; the stdlib handler only writes the line.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level, force=True)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields onto every later log line in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` block."""

    def __init__(self, **fields: Any):
        self._fields = fields

    def __enter__(self) -> LogContext:
        bind_context(**self._fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        unbind_context(*self._fields)


__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
