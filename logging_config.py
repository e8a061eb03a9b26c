"""Structlog configuration with a stdlib bridge.

- configure_logging(): one-shot structlog + stdlib setup
- get_logger(): returns a logger bound with the emitting component
"""

import logging
import os
import sys
from typing import Any, List, Optional

import structlog

_CONFIGURED = False


def configure_logging(log_format: Optional[str] = None) -> None:
    """Configure structlog once; later calls are no-ops.

    The renderer follows ``log_format`` (json|console), then LOG_FORMAT,
    then APP_ENV.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    renderer = _select_renderer(log_format)
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if isinstance(renderer, structlog.processors.JSONRenderer):
        shared_processors.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route logging.getLogger() output (uvicorn, pymongo) through the same pipeline
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *shared_processors,
            renderer,
        ],
    )
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    logging.getLogger("pymongo").setLevel(logging.WARNING)


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    # Initial values keep the proxy lazy until configure_logging() has run
    return structlog.get_logger(component=component)


def _select_renderer(log_format: Optional[str]) -> Any:
    log_format = (log_format or os.environ.get("LOG_FORMAT", "")).lower()
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=False)

    env = os.environ.get("APP_ENV", "local").lower()
    if env in ("staging", "prod", "production"):
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)
