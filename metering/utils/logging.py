"""
Structured logging configuration.

Production runs emit one JSON object per line so reconciliation runs can be
searched by ``run_id`` and ``tenant_id``; development uses the console
renderer. Secrets are masked and payment-provider customer references are
truncated before anything reaches a handler.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from metering import __version__
from metering.config import Environment, Settings, get_settings

SECRET_KEYS = (
    "password",
    "secret",
    "api_key",
    "authorization",
    "token",
)

# Stripe customer IDs are not secret but are personal data in log storage
CUSTOMER_KEYS = ("customer_ref", "external_customer_ref", "stripe_customer_id")


def mask_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Redact secrets and shorten customer references."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(marker in lowered for marker in SECRET_KEYS):
            event_dict[key] = "***REDACTED***"
        elif lowered in CUSTOMER_KEYS and isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"{value[:4]}...{value[-4:]}"
    return event_dict


def add_service_info(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict.setdefault("service", "dealer-metering")
    event_dict.setdefault("version", __version__)
    return event_dict


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Production: JSON output to stdout
    Development/staging: colored console output
    """
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        mask_sensitive_fields,
        add_service_info,
    ]

    if settings.environment == Environment.PRODUCTION:
        renderer: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=[*shared_processors, *renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.value),
    )

    # The Stripe SDK logs every request at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def bind_run_context(**values: Any) -> None:
    """Attach values (run_id, dry_run, ...) to every log line of this task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context(*keys: str) -> None:
    """Drop run-scoped keys, leaving whatever the caller bound."""
    structlog.contextvars.unbind_contextvars(*keys)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance with the given name."""
    return structlog.get_logger(name)
