from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes a client may receive
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "token_revoked",
    "otp_invalid",
    "forbidden",
    "account_locked",
    "account_inactive",
    "not_found",
    "conflict",
    "email_exists",
    "phone_exists",
    "rate_limited",
    "delivery_failed",
    "storage_unavailable",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))
