"""Global exception handlers for consistent error responses.

Design:
- RateLimitExceededAppError → 429 with rate limit headers and retry hint
- AuthRequiredAppError → 401 (principal-scoped limit, anonymous caller)
- AuthenticationAppError → 403
- ConfigurationAppError → 500 (misconfigured route; should be caught at startup)
- Any other AppError → 400
- Unexpected Exception → generic 500 (safety net)

All responses include request_id for tracing. Rejection payloads never
expose limiter internals (other partitions, partition counts, memory).
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from admission.core.errors import (
    AppError,
    AuthenticationAppError,
    AuthRequiredAppError,
    ConfigurationAppError,
    RateLimitExceededAppError,
)
from admission.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, RateLimitExceededAppError):
        return 429
    if isinstance(exc, AuthRequiredAppError):
        return 401
    if isinstance(exc, AuthenticationAppError):
        return 403
    if isinstance(exc, ConfigurationAppError):
        return 500
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with a consistent JSON format.

    Response body::

        {"error": {"code": ..., "message": ..., "request_id": ...,
                   "retry_after": ...,   # 429 only
                   "details": {...}}}    # when present

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with the mapped status code and error payload.
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    headers: dict[str, str] | None = None

    if isinstance(exc, RateLimitExceededAppError):
        error_content["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after), **exc.headers}
    elif isinstance(exc, ConfigurationAppError):
        # Rule names and hints stay in logs only
        error_content["message"] = "Service is misconfigured. Please try again later."
    elif exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message; no stack traces or exception text reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Example:
        >>> from fastapi import FastAPI
        >>> app = FastAPI()
        >>> setup_exception_handlers(app)
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
