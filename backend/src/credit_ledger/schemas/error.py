"""Structured error response schemas."""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    Every error carries a machine-readable code, a remediation hint and the
    request id for tracing.
    """

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'InsufficientCredits')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(
        default=None, description="Detailed error information (for validation errors)"
    )
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "InsufficientCredits",
                "message": "Insufficient credits for user u_123: requested 50.00, available 12.00",
                "details": [
                    {
                        "code": "insufficient_credits",
                        "message": "Requested 50.00 credits, 12.00 available",
                        "field": "amount",
                        "value": "50.00",
                    }
                ],
                "remediation": "Purchase more credits to continue using the service.",
                "request_id": "req_1234567890",
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }
    )


# Error codes enum for consistency
class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400, 422)
    VALIDATION_ERROR = "validation_error"
    INVALID_AMOUNT = "invalid_amount"

    # Business outcomes (402)
    INSUFFICIENT_CREDITS = "insufficient_credits"

    # Not found errors (404)
    ALERT_NOT_FOUND = "alert_not_found"

    # Storage errors (503)
    STORAGE_UNAVAILABLE = "storage_unavailable"
    DATABASE_ERROR = "database_error"

    # Internal errors (500)
    LEDGER_INVARIANT_VIOLATION = "ledger_invariant_violation"
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.INVALID_AMOUNT: "Provide a positive credit amount with at most two decimal places",
    ErrorCode.INSUFFICIENT_CREDITS: "Purchase more credits to continue using the service.",
    ErrorCode.ALERT_NOT_FOUND: "Verify the alert ID is correct",
    ErrorCode.STORAGE_UNAVAILABLE: "The ledger is temporarily unavailable. Retry the same request with the same reference.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
    ErrorCode.LEDGER_INVARIANT_VIOLATION: "Please contact support with the request ID",
    ErrorCode.INTERNAL_ERROR: "Please contact support with the request ID",
}
