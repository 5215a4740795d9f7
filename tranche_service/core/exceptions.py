"""
Domain exceptions and global exception handlers.

Every error response follows one JSON envelope::

    {
        "error": true,
        "message": "<human-readable description>"
    }

plus an optional ``details`` object and a ``retriable`` flag for errors the
caller may resolve by re-quoting and retrying (capacity conflicts).

The domain exceptions are raised by the service layer without importing
FastAPI, so the pricing engine and lifecycle manager stay usable from
batch jobs that never touch HTTP.

Expected business conditions that batch callers must be able to skip past
(an invalid tranche transition, an unfillable quote) are NOT modelled as
exceptions; they are returned as typed result values by the services.
"""

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tranche_service.core.resilience import CircuitBreakerError

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────────────────
# Domain exceptions  (raised by service layer, caught by handlers below)
# ────────────────────────────────────────────────────────────────────────────


class AppException(Exception):
    """Base exception for all application-level errors."""

    retriable: bool = False

    def __init__(self, status_code: int, message: str, details: Any = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundException(AppException):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            status_code=404,
            message=f"{resource} with id '{identifier}' not found",
        )


class ConflictException(AppException):
    """Resource already exists / concurrent modification (409)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(status_code=409, message=message, details=details)


class BusinessRuleViolation(AppException):
    """Business rule was violated (422)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(status_code=422, message=message, details=details)


class CapacityConflictError(ConflictException):
    """
    A purchase lost the race for tranche capacity.

    Raised when the conditional decrement of ``units_available`` affects
    zero rows: the quote the caller acted on is stale.  The enclosing
    transaction must be rolled back; the caller may re-quote and retry.
    """

    retriable = True

    def __init__(
        self,
        tier_id: UUID,
        units_requested: int,
        units_available: Optional[int] = None,
    ):
        self.tier_id = tier_id
        self.units_requested = units_requested
        self.units_available = units_available
        super().__init__(
            message=(
                f"Pricing tier '{tier_id}' no longer has capacity for "
                f"{units_requested} units. Re-quote and retry."
            ),
            details={
                "tier_id": str(tier_id),
                "units_requested": units_requested,
                "units_available": units_available,
            },
        )


# ────────────────────────────────────────────────────────────────────────────
# FastAPI exception handler registration
# ────────────────────────────────────────────────────────────────────────────


def _error_body(message: str, details: Any = None, retriable: bool = False) -> dict:
    body: dict = {"error": True, "message": message}
    if details is not None:
        body["details"] = details
    if retriable:
        body["retriable"] = True
    return body


def add_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI application instance."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        """Handle domain-specific exceptions raised by the service layer."""
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.message, exc.details, exc.retriable),
        )

    @app.exception_handler(CircuitBreakerError)
    async def circuit_breaker_handler(
        request: Request, exc: CircuitBreakerError
    ) -> JSONResponse:
        """Database circuit is open: 503 with a Retry-After hint."""
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content=_error_body(
                "Service temporarily unavailable: database circuit is open", retriable=True
            ),
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle standard HTTP exceptions (e.g. 404 from path-not-found)."""
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return a 422 listing each field that failed validation and why."""
        errors = []
        for err in exc.errors():
            loc = " -> ".join(str(part) for part in err["loc"])
            errors.append({"field": loc, "message": err["msg"]})
        return JSONResponse(
            status_code=422,
            content=_error_body("Validation failed", errors),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Catch-all for unexpected exceptions."""
        logger.exception(
            "Unhandled exception on %s %s", request.method, request.url.path
        )
        return JSONResponse(
            status_code=500,
            content=_error_body("Internal Server Error. Please contact support."),
        )
