"""Structured logging setup.

structlog over the standard library, with either JSON or coloured console
output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from impulse_trader.config import LogFormat, get_settings


def setup_logging(level: str | None = None, log_format: LogFormat | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Falls back to the level and format from settings when not given.
    """
    settings = get_settings()
    level = level or settings.log_level
    log_format = log_format or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structured logger.

    Args:
        name: Logger name. Module name of the caller when None.
    """
    return structlog.get_logger(name)


def log_setup_event(
    logger: structlog.stdlib.BoundLogger,
    event: str,
    *,
    symbol: str,
    timeframe: str,
    direction: str,
    state: str,
    **kwargs: Any,
) -> None:
    """Log a setup lifecycle event."""
    logger.info(
        event,
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        state=state,
        **kwargs,
    )


def log_position_event(
    logger: structlog.stdlib.BoundLogger,
    event: str,
    *,
    key: str,
    state: str,
    price: float | None = None,
    **kwargs: Any,
) -> None:
    """Log a position lifecycle event."""
    logger.info(
        event,
        key=key,
        state=state,
        price=price,
        **kwargs,
    )


def log_rejection(
    logger: structlog.stdlib.BoundLogger,
    *,
    operation: str,
    reason: str,
    **kwargs: Any,
) -> None:
    """Log a business-rule rejection."""
    logger.warning(
        "operation_rejected",
        operation=operation,
        reason=reason,
        **kwargs,
    )
