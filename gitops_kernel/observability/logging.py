"""
Structured logging configuration.

Call `configure_logging()` once at process start (API factory, loop runner).
Modules obtain loggers with `structlog.get_logger(__name__)` and log
key/value events bound to the application being reconciled.
"""

import logging
import sys
from typing import Literal, Optional

import structlog

_configured = False


def configure_logging(
    level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR"]] = None,
    format: Optional[Literal["json", "console"]] = None,
    force: bool = False,
) -> None:
    """
    Configure structlog on top of stdlib logging.

    Subsequent calls are no-ops unless force=True. Unset arguments fall back
    to the process settings.
    """
    global _configured

    if _configured and not force:
        return

    from gitops_kernel.config import get_settings

    settings = get_settings()
    log_level = (level or settings.log_level).upper()
    log_format = (format or settings.log_format).lower()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
        force=True,
    )

    _configured = True
