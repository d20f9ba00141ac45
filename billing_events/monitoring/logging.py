"""
Structured logging configuration.

structlog renders every event as JSON; stdlib loggers (uvicorn, SQLAlchemy,
httpx) go through a python-json-logger handler on the root logger so both
streams land in the same format. The request ID and worker name are bound
through ``structlog.contextvars``.
"""
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from billing_events.config import Settings, get_settings

EventDict = Dict[str, Any]

# Keys whose values never reach the logs.
REDACTED_KEYS = frozenset(
    {
        "secret",
        "webhook_secret",
        "processor_secret_key",
        "api_key",
        "signature",
        "x_webhook_signature",
        "authorization",
    }
)
REDACTED = "[redacted]"


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def app_context_processor(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Stamp every event with the service name and environment."""

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def build_processors(settings: Settings) -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
        app_context_processor(settings),
        structlog.processors.JSONRenderer(),
    ]


def json_stream_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; the root handler is replaced, not added.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(json_stream_handler())

    # Third-party chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
