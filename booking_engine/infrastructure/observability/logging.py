"""
Structured logging setup for the booking engine.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def token_preview(token: str | None) -> str | None:
    """Short, log-safe preview of a secret value."""
    if not token:
        return None
    return token[:8] + "..."


def log_sync_result(result: Any) -> None:
    """Log a calendar sync outcome with consistent fields."""
    logger = get_logger("calendar_sync")

    log_data = {
        "provider_id": result.provider_id,
        "success": result.success,
        "skipped": result.skipped,
        "events_created": result.events_created,
        "events_updated": result.events_updated,
        "events_deleted": result.events_deleted,
        "log_type": "calendar_sync",
    }

    if result.error:
        log_data["error"] = result.error

    if result.success or result.skipped:
        logger.info("Calendar sync finished", **log_data)
    else:
        logger.error("Calendar sync failed", **log_data)
