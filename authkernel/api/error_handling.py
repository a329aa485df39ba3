from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from authkernel.api.schemas import Envelope, ErrorBody
from authkernel.logging import get_logger
from authkernel.service.errors import ErrorKind, ServiceError
from authkernel.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Fallback codes for errors that do not carry an ErrorKind
_STATUS_TO_CODE = {
    400: ErrorKind.VALIDATION_ERROR.value,
    401: ErrorKind.TOKEN_INVALID.value,
    403: ErrorKind.FORBIDDEN.value,
    404: ErrorKind.ACCOUNT_NOT_FOUND.value,
    409: ErrorKind.INVALID_STATE.value,
    429: ErrorKind.RATE_LIMITED.value,
    500: "server_error",
}

_IDENTITY_FIELDS = {"provider", "provider_uid"}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    headers = None
    if isinstance(details, dict) and details.get("retry_after_seconds"):
        headers = {"Retry-After": str(details["retry_after_seconds"])}
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render kernel and storage errors as ``{status, error, request_id}`` envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.detail.get("field"),
        )
        kind = (
            ErrorKind.ALREADY_LINKED
            if exc.detail.get("field") in _IDENTITY_FIELDS
            else ErrorKind.DUPLICATE_IDENTIFIER
        )
        return _error_response(409, exc.message, exc.detail, code=kind.value)

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
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
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
        return _error_response(500, "internal server error", code="server_error")
