"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any, Optional

import structlog

# Third-party loggers that are too chatty at DEBUG for an archive hook.
NOISY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3")


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    correlation_id: Optional[str] = None,
) -> structlog.BoundLogger:
    """Configure structured logging.

    Logs go to stderr: when running as archive_command the database server
    collects stderr into its own log.

    Args:
        log_level: Log level (DEBUG, INFO, WARN, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
        correlation_id: Optional correlation ID for this run

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("walarchiver")
    if correlation_id:
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

    return logger


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name

    Returns:
        Logger instance
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
