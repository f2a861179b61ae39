from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from passgate.api.schemas import Envelope
from passgate.logging import get_correlation_id, get_logger
from passgate.service.errors import RateLimitedError, ServiceError
from passgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}


def _error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    content: Any = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    envelope = Envelope.error(
        status_code,
        code or _STATUS_TO_CODE.get(status_code, "SERVER_ERROR"),
        message,
        content=content,
        request_id=get_correlation_id(),
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure into the action envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        gateway = getattr(request.app.state, "gateway", None)
        if gateway is not None:
            await gateway.on_error(request, exc)
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.error_code, exc.detail or None, headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            message=exc.message,
        )
        return _error_response(409, exc.message, "CONFLICT")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        # Cache or store outages land here; clients get a generic message.
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", "SERVER_ERROR")
