from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes carried in the envelope
_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "NOT_FOUND",
    "AUTH_REQUIRED",
    "INVALID_CREDENTIALS",
    "TOKEN_INVALID",
    "SESSION_INVALID",
    "ACCOUNT_LOCKED",
    "TWO_FACTOR_REQUIRED",
    "TWO_FACTOR_INVALID",
    "EMAIL_NOT_VERIFIED",
    "PERMISSION_DENIED",
    "ROLE_DENIED",
    "CONFLICT",
    "RATE_LIMIT_EXCEEDED",
    "SERVICE_UNAVAILABLE",
    "SERVER_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))
