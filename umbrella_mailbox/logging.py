"""structlog wiring for the mailbox pipeline and its HTTP surface.

Every event goes through the stdlib root logger, so third-party records
(uvicorn access logs included) land in the same stream and format as the
pipeline's own structured events.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

# Libraries that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")

logger = structlog.get_logger()


def _event_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _stdout_handler(json: bool) -> logging.Handler:
    """A stdout handler rendering JSON lines, or coloured console output."""
    final: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, final],
        )
    )
    return handler


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Route structlog through the root logger and install one stdout handler.

    Safe to call more than once; earlier root handlers are replaced.
    *level* is a level name in any case.
    """
    structlog.configure(
        processors=[*_event_processors(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_stdout_handler(json))
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def alert_operator(reason: str, **fields: Any) -> None:
    """Emit an ``operator_alert`` event at CRITICAL level.

    Alerting rules key on the event name; *reason* says what needs a
    human (revoked credentials, misconfiguration, ...).
    """
    logger.critical("operator_alert", reason=reason, **fields)
