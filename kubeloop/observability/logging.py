"""Structured logging for kubeloop components.

Every record is a single JSON object on stderr carrying ``service``,
``component`` and, for reconcile passes, the ``controller`` and object
``key``. Tracebacks are rendered as structured dictionaries so a failing
reconcile stays one line.
"""

from __future__ import annotations

import logging
import sys
from typing import Final, cast

import structlog
from structlog.typing import FilteringBoundLogger

SERVICE_NAME: Final[str] = "kubeloop"


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr at *level*."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.dict_tracebacks,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(sort_keys=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # uvicorn logs through the standard library
    logging.getLogger("uvicorn").setLevel(log_level)


def get_logger(component: str) -> FilteringBoundLogger:
    """Return a logger bound to the kubeloop service and *component*."""
    return cast(FilteringBoundLogger, structlog.get_logger(service=SERVICE_NAME, component=component))
