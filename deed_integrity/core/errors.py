"""
Standardized Error Handling for Deed Integrity.

Domain exceptions raised by the integrity pipeline, plus the FastAPI
handlers that render them as JSON with a consistent structure.
"""

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class DeedIntegrityError(Exception):
    """Base exception for integrity pipeline errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "integrity_error",
        status_code: int = 500,
        details: list[dict] | dict | None = None,
        transient: bool = False,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details
        self.transient = transient
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(DeedIntegrityError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            message=message,
            error_code="not_found",
            status_code=404,
        )
        self.resource = resource
        self.identifier = identifier


class InvalidStateError(DeedIntegrityError):
    """Document is in the wrong lifecycle stage for the operation."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="invalid_state",
            status_code=409,
            details={"current_status": current_status} if current_status else None,
        )
        self.current_status = current_status


class ValidationError(DeedIntegrityError):
    """Input failed validation."""

    def __init__(self, message: str, details: list[dict] | None = None):
        super().__init__(
            message=message,
            error_code="validation_error",
            status_code=400,
            details=details,
        )


class ConflictError(DeedIntegrityError):
    """Resource conflict (e.g., duplicate document number)."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(
            message=message,
            error_code="conflict",
            status_code=409,
        )


class CorruptSourceError(DeedIntegrityError):
    """Byte source does not match its declared size."""

    def __init__(self, message: str, declared_size: int | None = None, bytes_read: int | None = None):
        super().__init__(
            message=message,
            error_code="corrupt_source",
            status_code=422,
            details={"declared_size": declared_size, "bytes_read": bytes_read},
        )
        self.declared_size = declared_size
        self.bytes_read = bytes_read


class HashComputationError(DeedIntegrityError):
    """Digest computation failed for a reason other than corruption."""

    def __init__(self, message: str = "Failed to compute hash"):
        super().__init__(
            message=message,
            error_code="hash_failure",
            status_code=500,
        )


class DuplicateHashError(DeedIntegrityError):
    """A hash record already exists for this document and algorithm."""

    def __init__(self, document_id: str, algorithm: str, transient: bool = False):
        super().__init__(
            message=f"Hash record already exists for document '{document_id}' ({algorithm})",
            error_code="duplicate_hash",
            status_code=409,
            transient=transient,
        )
        self.document_id = document_id
        self.algorithm = algorithm


class InvalidReferenceError(DeedIntegrityError):
    """A foreign key points at a row that no longer exists."""

    def __init__(self, message: str = "Referenced document does not exist"):
        super().__init__(
            message=message,
            error_code="invalid_reference",
            status_code=404,
        )


class StorageError(DeedIntegrityError):
    """Object-store I/O failure."""

    def __init__(
        self,
        provider: str = "Storage",
        message: str = "Storage operation failed",
        upstream_status: int | None = None,
        transient: bool = False,
    ):
        super().__init__(
            message=f"{provider}: {message}",
            error_code="storage_error",
            status_code=503 if transient else 502,
            details={"upstream_status": upstream_status} if upstream_status else None,
            transient=transient,
        )
        self.provider = provider
        self.upstream_status = upstream_status


class ObjectNotFoundError(StorageError):
    """Stored object is missing."""

    def __init__(self, provider: str, location: str):
        super().__init__(provider, f"object not found: {location}", upstream_status=404)
        self.error_code = "not_found"
        self.status_code = 404
        self.location = location


class AccessDeniedError(StorageError):
    """Object store refused access to the object."""

    def __init__(self, provider: str, location: str):
        super().__init__(provider, f"access denied: {location}", upstream_status=403)
        self.error_code = "access_denied"
        self.status_code = 403
        self.location = location


class PersistenceError(DeedIntegrityError):
    """Database I/O failure."""

    def __init__(self, operation: str, message: str, transient: bool = False):
        super().__init__(
            message=f"{operation}: {message}",
            error_code="persistence_error",
            status_code=503,
            transient=transient,
        )
        self.operation = operation


class OperationCancelledError(DeedIntegrityError):
    """Caller cancelled the operation or its deadline passed."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(
            message=message,
            error_code="cancelled",
            status_code=499,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

def get_request_id(request: Request) -> Optional[str]:
    """Request ID assigned by the logging middleware, else the client's header."""
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")


async def integrity_error_handler(request: Request, exc: DeedIntegrityError) -> JSONResponse:
    """Handle pipeline-specific exceptions."""
    logger.warning(
        "DeedIntegrityError: %s - %s",
        exc.error_code,
        exc.message,
        extra={"error_code": exc.error_code, "path": request.url.path}
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "request_id": get_request_id(request)},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions."""
    error_codes = {
        400: "bad_request",
        403: "access_denied",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        413: "payload_too_large",
        422: "validation_error",
        500: "internal_error",
        502: "bad_gateway",
        503: "service_unavailable",
    }

    error_code = error_codes.get(exc.status_code, "error")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": error_code,
            "message": str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
            "request_id": get_request_id(request),
        },
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors (mapped to 400)."""
    details = []
    for error in exc.errors():
        details.append({
            "loc": [str(part) for part in error.get("loc", [])],
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        })

    logger.info(
        "Validation error on %s: %d issues",
        request.url.path,
        len(details),
    )

    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": details,
            "request_id": get_request_id(request),
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "Unhandled exception on %s: %s",
        request.url.path,
        str(exc),
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(request),
        },
    )


# =============================================================================
# Setup Function
# =============================================================================

def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Call during app initialization:
        setup_exception_handlers(app)
    """
    app.add_exception_handler(DeedIntegrityError, integrity_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "DeedIntegrityError",
    "NotFoundError",
    "InvalidStateError",
    "ValidationError",
    "ConflictError",
    "CorruptSourceError",
    "HashComputationError",
    "DuplicateHashError",
    "InvalidReferenceError",
    "StorageError",
    "ObjectNotFoundError",
    "AccessDeniedError",
    "PersistenceError",
    "OperationCancelledError",
    "setup_exception_handlers",
]
