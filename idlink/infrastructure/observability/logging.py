"""
Structured logging setup for the identity verification service.
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
            _redact_secrets,
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
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


_SECRET_FIELDS = ("token", "code", "oauth_state", "access_token", "id_token")


def _redact_secrets(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Shorten raw verification secrets that slipped into a log call."""
    for field in _SECRET_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str) and len(value) > 8:
            event_dict[field] = preview(value)
    return event_dict


def preview(secret: str, length: int = 8) -> str:
    """Loggable prefix of a token, state or authorization code."""
    if not secret:
        return ""
    return secret[:length] + "..."


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_verification_event(
    event: str, guild_id: str, member_id: str, state: str, error: str = None, **extra: Any
):
    """Log verification state machine transitions with consistent fields."""
    logger = get_logger("verification")

    log_data = {
        "guild_id": guild_id,
        "member_id": member_id,
        "state": state,
        "event_type": "verification_transition",
        **extra,
    }

    if error:
        log_data["error"] = error
        logger.warning(event, **log_data)
    else:
        logger.info(event, **log_data)


def log_request(method: str, path: str, status_code: int, duration_ms: float):
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "event_type": "http_request",
    }

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
