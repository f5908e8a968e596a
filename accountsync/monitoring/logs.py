"""Structured logging configuration shared by all entry points."""

import logging

import structlog

from accountsync.config import get_settings

_LOG_LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _get_log_level(level: str | None = None) -> int:
    """Get numeric log level from settings."""
    level_str = (level or get_settings().log_level).lower()
    return _LOG_LEVEL_MAP.get(level_str, logging.INFO)


def configure_logging(*, level: str | None = None, log_format: str | None = None) -> None:
    """Configure structlog processors and renderer."""
    log_format = log_format or get_settings().log_format
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
            if log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_get_log_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
