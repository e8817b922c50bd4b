"""
Structured logging for the booking engine.

Every process (API, worker, scripts) calls ``setup_logging`` once at import
time. Booking operations run inside ``log_context`` so each line they emit
carries the booking and actor it concerns, including lines logged by the
availability ledger and refund ledger underneath.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator, MutableMapping, cast

import structlog

from booking_engine.config import DEBUG, LOG_LEVEL

Processor = Callable[[Any, str, MutableMapping[str, Any]], Any]

SERVICE_NAME = "booking-engine"

# SQL echo and connection pool chatter drown out booking events
QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "alembic.runtime.migration": logging.INFO,
    "urllib3": logging.WARNING,
    "requests": logging.WARNING,
}


def _add_service(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging() -> None:
    """
    Configure stdlib logging and structlog.

    JSON lines with dict tracebacks unless LOG_LEVEL=DEBUG, which switches to
    the coloured console renderer.
    """
    logging.basicConfig(
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=LOG_LEVEL,
    )
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if DEBUG:
        processors += [structlog.dev.set_exc_info, cast(Processor, structlog.dev.ConsoleRenderer(colors=True))]
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            cast(Processor, structlog.processors.JSONRenderer()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """
    Bind ``values`` to every log line emitted in this block.

    ``None`` values are skipped. Keys bound inside the block, including by
    nested ``bind_contextvars`` calls, are dropped on exit and the outer
    context is restored.
    """
    previous = structlog.contextvars.get_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})
    try:
        yield
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**previous)
