"""
Error types for the cache flush service.

Every error carries a stable ``code`` and the HTTP ``status_code`` the API
answers with. Layer-scoped errors also carry the ``layer_id`` they concern;
the coordinator turns those into per-layer results instead of failing the
whole operation.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


def current_trace_id() -> Optional[str]:
    """Hex trace id of the recording span, if any."""
    span = trace.get_current_span()
    if span and span.is_recording():
        trace_id = span.get_span_context().trace_id
        if trace_id:
            return f"{trace_id:032x}"
    return None


class CacheFlushException(Exception):
    """Base exception for service errors."""

    code: str = "CACHE_FLUSH_ERROR"
    status_code: int = 400
    default_message: str = "Cache flush error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            trace_id=current_trace_id(),
            code=self.code,
            message=self.message,
            details=self.details,
        )


class AuthenticationError(CacheFlushException):
    code = "AUTHENTICATION_ERROR"
    status_code = 401
    default_message = "Authentication failed"


class AuthorizationError(CacheFlushException):
    code = "AUTHORIZATION_ERROR"
    status_code = 403
    default_message = "Authorization failed"


class NotFoundError(CacheFlushException):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ValidationError(CacheFlushException):
    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Validation failed"


class ConfigResolutionError(CacheFlushException):
    """The layer registry could not be read."""

    code = "CONFIG_RESOLUTION_ERROR"
    status_code = 503
    default_message = "Cache layer configuration unavailable"


class PersistenceError(CacheFlushException):
    """An operation or layer status write failed."""

    code = "PERSISTENCE_ERROR"
    status_code = 503
    default_message = "Audit store write failed"


class LayerError(CacheFlushException):
    """Base for errors scoped to one cache layer."""

    def __init__(self, layer_id: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.layer_id = layer_id
        super().__init__(message, {"layer_id": layer_id, **(details or {})})


class LayerFlushError(LayerError):
    """A single cache layer could not be flushed."""

    code = "LAYER_FLUSH_ERROR"
    status_code = 502
    default_message = "Layer flush failed"


class LayerSkipped(LayerError):
    """An executor declined to flush, e.g. because its cooldown is active."""

    code = "LAYER_SKIPPED"
    status_code = 409
    default_message = "Layer flush skipped"
