from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from campusauth.api.schemas import Envelope, ErrorBody
from campusauth.logging import get_logger
from campusauth.service.errors import ServiceError
from campusauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# The one place error codes become HTTP statuses
_CODE_TO_STATUS = {
    "validation_error": 400,
    "unauthorized": 401,
    "invalid_credentials": 401,
    "token_expired": 401,
    "token_invalid": 401,
    "token_revoked": 401,
    "otp_invalid": 401,
    "forbidden": 403,
    "account_locked": 403,
    "account_inactive": 403,
    "not_found": 404,
    "conflict": 409,
    "email_exists": 409,
    "phone_exists": 409,
    "rate_limited": 429,
    "server_error": 500,
    "delivery_failed": 502,
    "storage_unavailable": 503,
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def status_for_code(error_code: str) -> int:
    return _CODE_TO_STATUS.get(error_code, 500)


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _retry_after_header(exc: ServiceError) -> dict | None:
    retry_after = exc.detail.get("retry_after") if exc.detail else None
    if retry_after is None:
        return None
    return {"Retry-After": str(retry_after)}


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope handlers for service and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code = status_for_code(exc.error_code)
        code = exc.error_code if exc.error_code in _CODE_TO_STATUS else "server_error"
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=code,
            message=exc.message,
        )
        return _error_response(
            status_code,
            exc.message,
            exc.detail,
            code=code,
            headers=_retry_after_header(exc),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

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
