from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure kinds carried in every unsuccessful execution envelope."""

    NOT_FOUND = "NOT_FOUND"
    DISABLED = "DISABLED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION = "VALIDATION"
    VALIDATION_OUT = "VALIDATION_OUT"
    CONFIGURATION = "CONFIGURATION"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    UPSTREAM = "UPSTREAM"
    WORKFLOW = "WORKFLOW"
    ENTITY = "ENTITY"
    USER_CODE = "USER_CODE"
    INTERNAL = "INTERNAL"


KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DISABLED: 404,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.VALIDATION_OUT: 500,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.WORKFLOW: 502,
    ErrorKind.ENTITY: 500,
    ErrorKind.USER_CODE: 500,
    ErrorKind.INTERNAL: 500,
}


def status_for_kind(kind: ErrorKind | str) -> int:
    try:
        return KIND_STATUS[ErrorKind(kind)]
    except ValueError:
        return 500


class ExecutionError(Exception):
    """Base class for failures raised below the execution engine.

    The engine turns every instance into an envelope whose ``error.kind`` is
    the class-level ``kind`` unless one is passed explicitly.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        sub_kind: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.sub_kind = sub_kind
        self.details = details or {}


class ConfigurationError(ExecutionError):
    """Unknown handler kind or a required handlerConfig field is missing."""
    kind = ErrorKind.CONFIGURATION


class RequestValidationError(ExecutionError):
    kind = ErrorKind.VALIDATION


class ResponseValidationError(ExecutionError):
    kind = ErrorKind.VALIDATION_OUT


class ExecutionTimeout(ExecutionError):
    kind = ErrorKind.TIMEOUT


class UpstreamError(ExecutionError):
    """Outbound HTTP failure; ``sub_kind`` is network, timeout or http_error."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        sub_kind: str,
        status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        payload = dict(details or {})
        if status is not None:
            payload["upstreamStatus"] = status
        super().__init__(message, sub_kind=sub_kind, details=payload)
        self.status = status


class WorkflowFailure(ExecutionError):
    kind = ErrorKind.WORKFLOW


class EntityFailure(ExecutionError):
    kind = ErrorKind.ENTITY


class UserCodeError(ExecutionError):
    kind = ErrorKind.USER_CODE


class RecordNotFound(ExecutionError):
    kind = ErrorKind.NOT_FOUND


class EndpointDisabled(ExecutionError):
    kind = ErrorKind.DISABLED


class ServiceError(Exception):
    """Base class for administrative-surface exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many requests (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ErrorKind",
    "KIND_STATUS",
    "status_for_kind",
    "ExecutionError",
    "ConfigurationError",
    "RequestValidationError",
    "ResponseValidationError",
    "ExecutionTimeout",
    "UpstreamError",
    "WorkflowFailure",
    "EntityFailure",
    "UserCodeError",
    "RecordNotFound",
    "EndpointDisabled",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
