"""
structlog setup.

- configure_logging(): installs processors once and binds a fresh run_id
- get_logger(): named FilteringBoundLogger
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars
from structlog.typing import FilteringBoundLogger


def configure_logging(level: str = "INFO", *, json: bool = False) -> str:
    """Configure structlog for the process and return the run id bound to the context."""
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    renderer: structlog.typing.Processor
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    run_id = uuid.uuid4().hex[:12]
    clear_contextvars()
    bind_contextvars(run_id=run_id)
    return run_id


def get_logger(name: str) -> FilteringBoundLogger:
    return structlog.get_logger().bind(logger=name)
