"""
Structured logging configuration.

Uses structlog for JSON-formatted logs with correlation IDs. Every record
passes through ``redact_sensitive_fields`` before rendering, so call sites
never redact on their own.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from payment_orchestrator.config import Settings
from payment_orchestrator.core.sanitize import REDACTED, is_sensitive_key, sanitize

# Keys added by structlog itself and never redacted or truncated.
_RESERVED_KEYS = {"event", "level", "logger", "timestamp", "exception", "stack"}


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Sanitize every field of a log event.

    Args:
        logger: Logger instance
        method_name: Log method name
        event_dict: Event dictionary

    Returns:
        dict[str, Any]: Event dictionary with secrets and PII redacted
    """
    for key, value in list(event_dict.items()):
        if key in _RESERVED_KEYS:
            continue
        event_dict[key] = REDACTED if is_sensitive_key(key) else sanitize(value)
    return event_dict


def build_app_context_processor(settings: Settings) -> Any:
    """Create a processor adding application context to log events."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def setup_logging(settings: Settings) -> None:
    """
    Configure structured logging.

    Sets up:
    - JSON-formatted logs (console rendering when log_json is off)
    - Correlation ID tracking through contextvars
    - Central secret/PII redaction
    """
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            build_app_context_processor(settings),
            redact_sensitive_fields,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
