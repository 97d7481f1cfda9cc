"""
Structured logging for the API process and the order sweeper.

structlog renders every event as JSON and hands it to a python-json-logger
handler. Merchant keys and notification signatures are masked before
rendering, including inside nested notification payloads. Work on a single
order runs inside ``order_context`` so every event it emits carries the
order number and gateway kind.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional, TextIO

import structlog
from pythonjsonlogger import jsonlogger

from seat_redemption.config import Settings, get_settings

SECRET_FIELDS = frozenset({"key", "sign", "merchant_key", "admin_api_key", "api_key"})

_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")


def _mask(value: Any) -> str:
    text = str(value)
    return f"{text[:4]}***" if len(text) > 8 else "***"


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask secret fields at the top level and one level down."""
    for field, value in list(event_dict.items()):
        if field in SECRET_FIELDS and value:
            event_dict[field] = _mask(value)
        elif isinstance(value, dict):
            event_dict[field] = {
                k: _mask(v) if k in SECRET_FIELDS and v else v for k, v in value.items()
            }
    return event_dict


class ServiceContext:
    """Stamps service name, environment and process role on every event."""

    def __init__(self, settings: Settings, component: str):
        self.service = settings.app_name
        self.env = settings.app_env
        self.component = component

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", self.service)
        event_dict.setdefault("app_env", self.env)
        event_dict.setdefault("component", self.component)
        return event_dict


@contextmanager
def order_context(order_no: Optional[str] = None, gateway: Optional[str] = None, **extra: Any) -> Iterator[None]:
    """Bind order identifiers to every event logged inside the block."""
    values = {k: v for k, v in {"order_no": order_no, "gateway": gateway, **extra}.items() if v}
    with structlog.contextvars.bound_contextvars(**values):
        yield


def setup_logging(
    settings: Optional[Settings] = None,
    component: str = "api",
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structlog and the root JSON handler.

    Args:
        settings: Source of log level and service identity (cached settings when omitted)
        component: Process role stamped on events, ``api`` or ``sweeper``
        stream: Output stream, stdout by default
    """
    settings = settings or get_settings()

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
            ServiceContext(settings, component),
            redact_secrets,
            structlog.processors.JSONRenderer(),
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

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, component=component
    )
