"""Exception handlers rendering every failure in the response envelope."""

from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from aptdesk.complaints.errors import ComplaintError, InternalError, RateLimitError, ValidationError

logger = logging.getLogger(__name__)

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "AUTHENTICATION_FAILED",
    403: "ROLE_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    503: "SERVICE_UNAVAILABLE",
}


def envelope(*, success: bool, data: Any = None, message: str | None = None, code: str | None = None) -> dict:
    body: dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    if code is not None:
        body["code"] = code
    return body


def error_response(status_code: int, message: str, code: str, **extra: Any) -> JSONResponse:
    content = envelope(success=False, message=message, code=code)
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


async def complaint_error_handler(request: Request, exc: ComplaintError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Complaint operation failed", extra={"path": request.url.path, "code": exc.code})
    else:
        logger.info(
            "Complaint request rejected",
            extra={"path": request.url.path, "code": exc.code, "status_code": exc.status_code},
        )
    return error_response(exc.status_code, exc.message, exc.code, details=exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
        for error in exc.errors()
    ]
    return error_response(400, "Request validation failed", ValidationError.code, details=errors)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    response = error_response(exc.status_code, str(exc.detail), code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Must stay synchronous: SlowAPIMiddleware calls it without awaiting."""

    logger.warning("Rate limit exceeded", extra={"path": request.url.path, "limit": str(exc.detail)})
    return error_response(RateLimitError.status_code, f"Too many requests: {exc.detail}", RateLimitError.code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = str(uuid.uuid4())
    logger.exception("Unhandled error", extra={"path": request.url.path, "trace_id": trace_id})
    settings = getattr(request.app.state, "settings", None)
    detail = None
    if settings is not None and settings.expose_error_details:
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return error_response(
        InternalError.status_code,
        "An internal server error occurred",
        InternalError.code,
        trace_id=trace_id,
        details=detail,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ComplaintError, complaint_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
