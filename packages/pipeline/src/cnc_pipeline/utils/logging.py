"""
utils/logging.py — structlog setup shared by the CLI and pipelines.run().

Events are snake_case with the acquisition tuple bound as context
(indicator, region, period). settings.log_format picks JSON lines for
scheduled runs or the console renderer for operators.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from cnc_shared.config import settings

# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def configure_logging(
    log_level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Route structlog and the selenium/httpx stdlib loggers to stdout."""
    level = log_level or settings.log_level
    fmt = log_format or settings.log_format
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    # selenium and httpx log through the standard library
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )
    logging.getLogger("selenium").setLevel(max(numeric_level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **initial_values: Any) -> structlog.BoundLogger:
    """Module logger with *initial_values* bound, e.g. pipeline="acquisition"."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger  # type: ignore[return-value]
