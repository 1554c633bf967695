from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fairshare.api.schemas import Envelope, ErrorBody
from fairshare.config import get_settings
from fairshare.logging import get_logger, sanitize_error_message
from fairshare.service import runtime as runtime_module
from fairshare.service.errors import ErrorKind, ServiceError
from fairshare.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorKind.VALIDATION_FAILED.value,
    401: ErrorKind.UNAUTHENTICATED.value,
    403: ErrorKind.FORBIDDEN.value,
    404: ErrorKind.NOT_FOUND.value,
    405: ErrorKind.VALIDATION_FAILED.value,
    409: ErrorKind.CONFLICT.value,
    423: ErrorKind.FORBIDDEN.value,
    429: ErrorKind.RATE_LIMITED.value,
    500: ErrorKind.INTERNAL.value,
    503: ErrorKind.TRANSIENT.value,
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return ErrorKind.INTERNAL.value if status_code >= 500 else ErrorKind.VALIDATION_FAILED.value


def _debug_enabled() -> bool:
    current = runtime_module.runtime
    settings = current.settings if current is not None else get_settings()
    return settings.debug


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
    reason: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Build the failure envelope for ``status_code``."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        reason=reason,
        details=details or None,
    )
    envelope = Envelope(
        success=False, message=message, status_code=status_code, error=error_body
    )
    return JSONResponse(
        status_code=status_code, content=envelope.to_content(), headers=headers
    )


def _rate_limit_headers(detail: dict[str, Any]) -> dict[str, str]:
    headers: dict[str, str] = {}
    if "retry_after_seconds" in detail:
        headers["Retry-After"] = str(detail["retry_after_seconds"])
    if "limit" in detail:
        headers["X-RateLimit-Limit"] = str(detail["limit"])
        headers["X-RateLimit-Remaining"] = str(detail.get("remaining", 0))
    if "reset_seconds" in detail:
        headers["X-RateLimit-Reset"] = str(detail["reset_seconds"])
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing exception handlers on ``app``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            reason=exc.reason,
            message=exc.message,
        )
        details: Any = exc.detail
        headers = None
        if exc.kind == ErrorKind.RATE_LIMITED:
            headers = _rate_limit_headers(exc.detail)
        elif exc.kind in (ErrorKind.TRANSIENT, ErrorKind.INTERNAL) and not _debug_enabled():
            details = None
        return error_response(
            exc.status_code,
            exc.message,
            details,
            code=exc.error_code,
            reason=exc.reason,
            headers=headers,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message, exc.detail, code=ErrorKind.CONFLICT.value)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = []
        for error in exc.errors():
            loc = [str(part) for part in error.get("loc", ()) if part != "body"]
            fields.append({"field": ".".join(loc) or "body", "message": error.get("msg")})
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[f["field"] for f in fields],
        )
        return error_response(400, "Invalid request", {"fields": fields})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

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
        details = None
        if _debug_enabled():
            details = {
                "type": type(exc).__name__,
                "message": sanitize_error_message(str(exc)),
            }
        return error_response(500, "Internal server error", details)
