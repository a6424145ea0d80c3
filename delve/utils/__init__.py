"""structlog setup shared by the CLI and the worker."""

from __future__ import annotations

import logging

import structlog


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog from settings; ``level`` and ``fmt`` override them.

    ``fmt`` is ``"console"`` (coloured, for a terminal) or ``"json"`` (one
    object per line).  Unknown levels fall back to INFO.
    """
    from delve.config import settings

    numeric = _LEVELS.get((level or settings.log_level).lower(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(fmt or settings.log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """structlog logger bound to ``component=name`` when a name is given."""
    log = structlog.get_logger()
    return log.bind(component=name) if name else log
