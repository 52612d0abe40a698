"""
Standard error responses for the API routers.
"""

from typing import Optional

from fastapi.responses import JSONResponse

from security_engine.exceptions import SecurityEngineError
from security_engine.models.api_models import ErrorResponse
from security_engine.utils.time_utils import utcnow


def create_error_response(
    error_type: str,
    message: str,
    correlation_id: str,
    status_code: int = 500,
    retry_after: Optional[int] = None,
    remaining_attempts: Optional[int] = None
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=error_type,
        message=message,
        correlation_id=correlation_id,
        timestamp=utcnow(),
        retry_after=retry_after,
        remaining_attempts=remaining_attempts
    )
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True),
        headers=headers
    )


def security_error_response(error: SecurityEngineError, correlation_id: str) -> JSONResponse:
    """Map a security engine error onto its HTTP status and body."""
    return create_error_response(
        error_type=error.code,
        message=error.message,
        correlation_id=correlation_id,
        status_code=error.status_code,
        retry_after=error.retry_after
    )


def internal_error_response(correlation_id: str, operation: str) -> JSONResponse:
    return create_error_response(
        error_type="InternalServerError",
        message=f"An unexpected error occurred during {operation}",
        correlation_id=correlation_id,
        status_code=500
    )
