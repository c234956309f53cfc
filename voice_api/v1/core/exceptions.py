"""
Error types and the JSON envelope every route answers with.

Routes raise ``VoiceAPIException`` subclasses. Version conflicts from the job
store and request-body validation failures are mapped onto the same envelope,
so a client only ever parses ``{ok, error: {message, code, type, details}}``.
"""

import time
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from voice_api.config.logging import add_request_context, get_logger
from voice_api.infra.versioning import VersionConflictError

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class VoiceAPIException(Exception):
    """Base exception for the voice conversion API."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(VoiceAPIException):
    """Input is well-formed but not acceptable (unknown pitch shift, unready audio)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_type = "validation_error"


class NotFoundError(VoiceAPIException):
    """The resource does not exist or belongs to another user."""

    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"


class ConflictError(VoiceAPIException):
    """Raised when a state transition is invalid or lost a concurrent write."""

    status_code = status.HTTP_409_CONFLICT
    error_type = "conflict"


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    error_type: str = "error",
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "type": error_type,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error(
    request: Request,
    status_code: int,
    message: str,
    error_type: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code=status_code,
            message=message,
            details=details,
            request_id=_request_id(request),
            error_type=error_type,
        ),
    )


async def voice_api_exception_handler(
    request: Request, exc: VoiceAPIException
) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request rejected",
        error_type=exc.error_type,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )
    return _error(request, exc.status_code, exc.message, exc.error_type, exc.details)


async def version_conflict_handler(
    request: Request, exc: VersionConflictError
) -> JSONResponse:
    """A write lost its compare-and-swap; the caller may retry with fresh state."""
    logger.info(
        "Concurrent modification rejected",
        entity=exc.entity,
        entity_id=str(exc.entity_id),
    )
    return _error(
        request,
        status.HTTP_409_CONFLICT,
        f"{exc.entity} was modified concurrently, retry the request",
        ConflictError.error_type,
        {"entity": exc.entity, "entity_id": str(exc.entity_id)},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    logger.warning("Request body rejected", errors=errors)
    message = errors[0]["message"] if errors else "Invalid request"
    return _error(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        message,
        ValidationError.error_type,
        {"errors": errors},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions (auth dependencies raise these)."""
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail)
    return _error(request, exc.status_code, str(exc.detail), "http_error")


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        exc_info=True,
    )
    return _error(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        VoiceAPIException.error_type,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to the log context and echo it on the response."""

    async def dispatch(self, request: Request, call_next):
        # Reuse the caller's correlation ID when one is supplied
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
