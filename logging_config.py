"""
logging_config.py
Structured logging setup using structlog directly.
"""

from __future__ import annotations

import logging

import structlog

import config


def setup_logging(log_format: str | None = None, level: str | None = None) -> None:
    """
    Configure stdlib logging and structlog once at startup.

    log_format: 'json' or 'console' (defaults to GYM_LOG_FORMAT)
    """
    log_format = log_format or config.LOG_FORMAT
    logging.basicConfig(format="%(message)s", level=(level or config.LOG_LEVEL).upper())

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
