from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lowcode_runtime.api.schemas import Envelope
from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.errors import ErrorKind, ServiceError
from lowcode_runtime.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Administrative statuses folded onto the envelope kinds; 409 has no kind of
# its own and travels as VALIDATION with subKind "conflict"
_STATUS_TO_KIND = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.VALIDATION,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


def _kind_for_status(status_code: int) -> ErrorKind:
    return _STATUS_TO_KIND.get(status_code, ErrorKind.INTERNAL)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    sub_kind: str | None = None,
) -> JSONResponse:
    envelope = Envelope.failure(
        _kind_for_status(status_code),
        message,
        code=status_code,
        sub_kind=sub_kind,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=envelope.to_wire())


def register_exception_handlers(app: FastAPI) -> None:
    """Render administrative and framework errors in the envelope shape."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, sub_kind="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail, sub_kind=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "invalid request")
        if location:
            message = f"{location}: {message}"
        return _error_response(400, message, errors, sub_kind="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", sub_kind="server_error")
