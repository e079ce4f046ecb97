"""
Custom exceptions and error handlers for consistent error responses.

Every response leaving the API uses the {success, message, data} envelope.
Failures additionally carry an error block with a kind and a stable code.
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict
import logging

logger = logging.getLogger("tripmerge.errors")


class AppException(Exception):
    """Base application exception."""

    kind = "AppError"

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Raised when caller input is malformed."""

    kind = "ValidationError"

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class NotFoundError(AppException):
    """Raised when a booking, parent or child is missing."""

    kind = "NotFoundError"

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class StateConflictError(AppException):
    """Raised when a booking's merge state forbids the operation."""

    kind = "StateConflictError"

    def __init__(self, message: str, booking_id: Any = None):
        super().__init__(
            message=message,
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"id": booking_id}
        )


class ExternalServiceError(AppException):
    """Raised when the route optimizer is unreachable or answers non-OK."""

    kind = "ExternalServiceError"

    def __init__(self, service: str, message: str):
        super().__init__(
            message=f"{service}: {message}",
            error_code="ERR_EXTERNAL_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"service": service}
        )


class PersistenceError(AppException):
    """Raised when a transaction fails and has been rolled back."""

    kind = "PersistenceError"

    def __init__(self, message: str = "Transaction failed and was rolled back"):
        super().__init__(
            message=message,
            error_code="ERR_PERSISTENCE_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )


def error_envelope(message: str, kind: str, code: str, details: Dict[str, Any] = None) -> dict:
    return {
        "success": False,
        "message": message,
        "data": None,
        "error": {
            "kind": kind,
            "code": code,
            "details": details or {}
        }
    }


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.message, exc.kind, exc.error_code, exc.details)
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(str(exc.detail), "HTTPError", error_code)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_envelope(
            "Validation error",
            ValidationError.kind,
            "ERR_VALIDATION",
            {"errors": exc.errors()}
        )
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_envelope(
            "An internal server error occurred",
            "InternalError",
            "ERR_INTERNAL_SERVER"
        )
    )
