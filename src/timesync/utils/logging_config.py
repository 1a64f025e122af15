"""Structured logging configuration for the time synchronization services."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import structlog


def setup_logging(
    level: str = "INFO",
    component: Optional[str] = None,
    log_path: Optional[str | Path] = None,
    json_output: bool = True,
) -> structlog.BoundLogger:
    """Configure structured logging and return a bound logger."""

    handlers: list[logging.Handler] = []
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    else:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger()
    if component:
        logger = logger.bind(component=component)
    return logger


def get_logger(name: str, component: Optional[str] = None, **context: Any) -> structlog.BoundLogger:
    """Return a logger for ``name`` with ``component`` and any non-None context bound.

    Transports bind ``connection_id`` here so every event of one connection
    can be correlated, e.g. ``get_logger(__name__, connection_id=cid)``.
    """
    bound = {key: value for key, value in context.items() if value is not None}
    if component:
        bound["component"] = component
    logger = structlog.get_logger(name)
    if bound:
        logger = logger.bind(**bound)
    return logger
