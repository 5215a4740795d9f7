"""
Shared error-response schemas, used to document error payloads in OpenAPI.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error envelope returned by all non-validation error handlers."""

    error: bool = Field(default=True, description="Always ``true`` for errors")
    message: str = Field(
        ..., description="Human-readable error description", examples=["Fund not found"]
    )
    details: Optional[Any] = Field(default=None, description="Structured context, if any")


class ConflictResponse(ErrorResponse):
    """409 body; ``retriable`` is set when re-quoting and retrying may succeed."""

    retriable: bool = Field(default=False)


class ValidationErrorDetail(BaseModel):
    """Single field-level validation failure."""

    field: str = Field(..., examples=["body -> units"])
    message: str = Field(..., examples=["Input should be greater than or equal to 1"])


class ValidationErrorResponse(BaseModel):
    """Response body for 422 Unprocessable Entity (validation failure)."""

    error: bool = Field(default=True)
    message: str = Field(default="Validation failed")
    details: List[ValidationErrorDetail] = Field(..., description="Per-field validation failures")
