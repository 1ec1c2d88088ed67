"""
Structured logging configuration.

Every log line is a JSON object rendered by structlog. The request id
bound by the API middleware (or the worker's batch context) is merged in
from context variables, and buyer contact details and credentials are
scrubbed before rendering.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from checkout_platform.config import get_settings

# Never rendered, whatever the value
SECRET_FIELDS = frozenset(
    {"client_secret", "secret", "stripe_signature", "webhook_secret", "api_key", "password"}
)
# Rendered partially so support can still correlate
CONTACT_FIELDS = frozenset({"buyer_email", "email", "ip_address"})


def mask_value(value: Any) -> str:
    text = str(value)
    if "@" in text:
        local, _, domain = text.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(text) > 4:
        return f"***{text[-4:]}"
    return "***"


def scrub_sensitive_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        if key in SECRET_FIELDS:
            event_dict[key] = "***REDACTED***"
        elif key in CONTACT_FIELDS and event_dict[key]:
            event_dict[key] = mask_value(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Tag events with the service name and environment."""
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    return event_dict


def setup_logging() -> None:
    """
    Route structlog and stdlib logging to JSON on stdout.

    Safe to call more than once; the root handler is replaced each time.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            scrub_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Third-party libraries log through stdlib; give them the same JSON shape
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level))

    quiet = {
        "httpx": logging.WARNING,
        "stripe": logging.INFO,
        "uvicorn.access": logging.WARNING,
        "sqlalchemy.engine": logging.INFO if settings.database_echo else logging.WARNING,
    }
    for name, level in quiet.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
