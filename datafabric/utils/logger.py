"""
Logging configuration

Modules call ``setup_logger(__name__)`` at import time; that only binds a
logger. Passing ``level`` (the CLI and API entry points do) reconfigures the
process-wide structlog pipeline.
"""
import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

DEFAULT_LEVEL = "INFO"

_configured = False


def _handlers(log_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    return handlers


def configure_logging(level: str = DEFAULT_LEVEL, log_file: Optional[str] = None, json_format: bool = False) -> None:
    """Configure stdlib logging and structlog for the whole process"""
    global _configured
    log_level = getattr(logging, level.upper())

    logging.basicConfig(format="%(message)s", level=log_level, handlers=_handlers(log_file), force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False
    )
    _configured = True


def setup_logger(
    name: Optional[str] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    json_format: bool = False
) -> structlog.BoundLogger:
    """
    Set up structured logging.

    Args:
        name: Logger name (usually ``__name__``)
        level: Minimum log level; reconfigures logging when given
        log_file: Optional file to mirror log output into
        json_format: Render JSON lines instead of the console format
    """
    if level is not None or log_file is not None or not _configured:
        configure_logging(level or DEFAULT_LEVEL, log_file=log_file, json_format=json_format)
    return structlog.get_logger(name)
