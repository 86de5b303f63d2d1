"""
Shared logging configuration for the cache flush service.

Every event is a structlog event dict. Request, caller and flush operation
ids live in context variables and are merged into each event, so a single
``operation_id`` query returns the whole story of one flush.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional
from contextvars import ContextVar

from opentelemetry import trace

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
operation_id_var: ContextVar[Optional[str]] = ContextVar('operation_id', default=None)

EventProcessor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for a service.

    ``json_logs=False`` switches to the human readable console renderer,
    which is what local development uses.
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_name(service_name),
            add_trace_context,
            add_correlation_context,
            renderer,
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


def add_service_name(service_name: str) -> EventProcessor:
    """Processor stamping every event with the emitting service."""

    def processor(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the ids of the recording OpenTelemetry span, if there is one."""
    span = trace.get_current_span()
    if not (span and span.is_recording()):
        return event_dict

    ids = span.get_span_context()
    if ids.trace_id:
        event_dict["trace_id"] = format(ids.trace_id, "032x")
    if ids.span_id:
        event_dict["span_id"] = format(ids.span_id, "016x")
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Merge request, caller and operation ids; explicit event fields win."""
    for key, var in (
        ("request_id", request_id_var),
        ("user_id", user_id_var),
        ("operation_id", operation_id_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context, generating one when the caller sent none."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None):
    """Set the authenticated caller for the rest of the request."""
    if user_id:
        user_id_var.set(user_id)


@contextmanager
def operation_context(operation_id: str) -> Iterator[None]:
    """Bind a flush operation id for the duration of the block."""
    token = operation_id_var.set(operation_id)
    try:
        yield
    finally:
        operation_id_var.reset(token)


def clear_context():
    """Forget the request, caller and operation bound to this context."""
    for var in (request_id_var, user_id_var, operation_id_var):
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Named structlog logger, e.g. ``get_logger("cache-flush.coordinator")``."""
    return structlog.get_logger(name)
