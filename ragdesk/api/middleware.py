"""API middleware: CORS, request logging, and error handling.

Starlette middleware is a stack (last added runs first).  ``main.py`` adds
``ErrorHandlingMiddleware`` before ``RequestLoggingMiddleware``, so the
logger is outermost and records the final status code, including the ones
produced by error mapping.
"""

from __future__ import annotations

import time

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ragdesk.api.schemas import ErrorResponse
from ragdesk.utils.errors import (
    CapacityError,
    ConfigurationError,
    ContentError,
    ExternalServiceError,
    InvalidTransitionError,
    JobCancelledError,
    NotFoundError,
    RagDeskError,
    TenantBoundaryError,
)
from ragdesk.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

# Most specific first; the first matching class decides the status code.
_STATUS_BY_ERROR: list[tuple[type[RagDeskError], int]] = [
    (NotFoundError, 404),
    (TenantBoundaryError, 403),
    (InvalidTransitionError, 409),
    (JobCancelledError, 409),
    (ContentError, 422),
    (CapacityError, 429),
    (ExternalServiceError, 502),
    (ConfigurationError, 500),
]


def status_for(exc: RagDeskError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_response(exc: RagDeskError) -> JSONResponse:
    """Sanitized JSON body for *exc*; internals never leave the server."""
    status = status_for(exc)
    retry_after = exc.retry_after if isinstance(exc, CapacityError) else None
    detail = exc.message
    if status >= 500:
        # Upstream and configuration messages can carry URLs or keys.
        detail = "The service is temporarily unavailable"
    body = ErrorResponse(error=type(exc).__name__, detail=detail, retry_after=retry_after)
    headers = {"Retry-After": str(max(1, round(retry_after)))} if retry_after else None
    return JSONResponse(status_code=status, content=body.model_dump(), headers=headers)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


def configure_cors(app: FastAPI, *, allowed_origins: list[str] | None = None) -> None:
    origins = allowed_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id", "X-Message-Id", "X-Stream-Id", "Retry-After"],
    )


# ---------------------------------------------------------------------------
# Request Logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        response: Response | None = None

        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else 500
            _logger.info(
                "http_request",
                method=request.method,
                path=str(request.url.path),
                status=status_code,
                duration_ms=duration_ms,
            )


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Convert ``RagDeskError`` subclasses into structured JSON errors.

    The status code follows the error category (404, 403, 409, 422, 429,
    502).  Full details are logged server-side; the client gets the error
    class name and a sanitized message.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)
        except RagDeskError as exc:
            _logger.error(
                "application_error",
                error_type=type(exc).__name__,
                message=exc.message,
                provider=exc.provider_name,
                path=str(request.url.path),
                status=status_for(exc),
            )
            return error_response(exc)
