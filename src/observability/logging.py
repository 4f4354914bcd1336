"""
Structured logging configuration using structlog.

JSON lines in production, coloured console output everywhere else. Every
process (API server, workers, CLI one-shots) calls ``setup_logging`` once at
start-up. The API binds ``request_id`` and each background job binds ``job``
through structlog contextvars, so every line a request or run emits carries
its correlation field.

Library modules that log through ``logging.getLogger(__name__)`` go through
the same stdlib handler and stream.
"""

import logging
import sys

import structlog
from structlog.types import Processor

from src.config.settings import get_settings

# Libraries that log at INFO on every call
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "asyncpg", "uvicorn.access")


def _renderer_chain(json_output: bool) -> list[Processor]:
    if json_output:
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def setup_logging(level: str | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Overrides ``Settings.log_level`` (the CLI passes ``DEBUG``
            for ``--debug``).

    Usage:
        setup_logging()
        logger = structlog.get_logger(__name__)
        logger.info("Scoring run finished", run_id="ab12cd34", posts_scored=812)
    """
    settings = get_settings()
    log_level = level or settings.log_level

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        *_renderer_chain(settings.is_production),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level),
        force=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
