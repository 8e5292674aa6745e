# src/crashguard/core/logging.py
"""Optional logging setup for hosts without their own.

Every crashguard module logs through structlog.get_logger(__name__) with
key/value fields and never logs message content. configure_logging()
sends those events and plain stdlib records to stdout through a single
ProcessorFormatter.
"""

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from crashguard.core.config import LoggingSettings


def configure_logging(*, json_output: bool = False, level: str = "INFO") -> None:
    """Install a stdout handler on the root logger.

    Args:
        json_output: One JSON object per line instead of console output
        level: Root log level name
    """
    log_level = logging.getLevelName(level.upper())
    pre_chain: list[Any] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
    ]
    renderers: list[Any] = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer()]
    )

    structlog.configure(
        processors=[structlog.contextvars.merge_contextvars, *pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[ProcessorFormatter.remove_processors_meta, *renderers],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    # SQL echo stays off even at DEBUG
    logging.getLogger("sqlalchemy").setLevel(max(log_level, logging.WARNING))


def configure_logging_from_settings(settings: "LoggingSettings") -> None:
    configure_logging(json_output=settings.json_output, level=settings.level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Bound logger for ``name`` (usually ``__name__``)."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
