"""
Structured logging for the Health Status layer.

Events are key-value records rendered as JSON (console output in local
environments), enriched with the service name and the correlation ids of the
request or evaluation being served. Health payloads never reach the logs: the
redaction processor masks payload and key-material fields by name.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar

REDACTED = "[redacted]"

# Event keys that may carry health data or key material
SENSITIVE_KEYS = frozenset({
    "blob",
    "history_blob",
    "encrypted_key",
    "encrypted_blob",
    "encrypted_image_key",
    "encrypted_image_blob",
    "symptoms",
    "test_result",
    "trace_tek",
    "private_key",
})

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
evaluation_id_var: ContextVar[Optional[str]] = ContextVar('evaluation_id', default=None)


def configure_logging(service_name: str, log_level: str = "info", json_output: bool = True) -> None:
    """Configure structured logging for a service."""
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            redact_sensitive_fields,
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive the service from the logger name ("health.engine" -> "health")."""
    logger_name = event_dict.get("logger") or ""
    if logger_name:
        event_dict.setdefault("service", logger_name.split(".")[0])
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request, user and evaluation ids when set."""
    for key, var in (("request_id", request_id_var),
                     ("user_id", user_id_var),
                     ("evaluation_id", evaluation_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask health payloads and key material."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None):
    """Set user context in logging."""
    if user_id:
        user_id_var.set(user_id)


@contextmanager
def evaluation_context(evaluation_id: Optional[str] = None) -> Iterator[str]:
    """Tag every event logged inside the block with one evaluation id."""
    evaluation_id = evaluation_id or str(uuid.uuid4())
    token = evaluation_id_var.set(evaluation_id)
    try:
        yield evaluation_id
    finally:
        evaluation_id_var.reset(token)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    user_id_var.set(None)
    evaluation_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
