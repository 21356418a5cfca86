"""
Standardized error response system.

Every failure leaves the API as ``{"error": str, "code": str, "verified": false}``
plus an optional request ID, so clients can branch on a stable ``code``.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from twofactor.core.exceptions import MalformedInputError, TwoFactorError

logger = logging.getLogger(__name__)


class ErrorResponse:
    """Standard error response format."""

    @staticmethod
    def create(
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> JSONResponse:
        """
        Create a standardized error response.

        Args:
            code: Machine-readable error code
            message: Human-readable error message
            status_code: HTTP status code
            details: Additional top-level fields (optional)
            request_id: Request correlation ID (optional)
            headers: Extra response headers (optional)

        Returns:
            JSONResponse with standard error format
        """
        error_data: Dict[str, Any] = {
            "error": message,
            "code": code,
            "verified": False,
        }

        if details:
            error_data.update(details)

        if request_id:
            error_data["requestId"] = request_id

        return JSONResponse(status_code=status_code, content=error_data, headers=headers)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


async def two_factor_error_handler(request: Request, exc: TwoFactorError) -> JSONResponse:
    """Render a TwoFactorError as a standardized error response."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    return ErrorResponse.create(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details(),
        request_id=_request_id(request),
        headers=exc.headers(),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request bodies that fail schema validation are reported as malformed input."""
    fields = {str(part) for error in exc.errors() for part in error.get("loc", ())}
    error = MalformedInputError() if "code" in fields else MalformedInputError("Invalid request")
    return await two_factor_error_handler(request, error)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything not raised as a TwoFactorError becomes a generic 500 with the standard body."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    error = TwoFactorError()
    return ErrorResponse.create(
        code=error.code,
        message=error.message,
        status_code=error.status_code,
        request_id=_request_id(request),
    )
