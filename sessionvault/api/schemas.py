from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "account_locked",
    "access_token_required",
    "invalid_access_token",
    "token_rotation_failed",
    "server_error",
    "service_unavailable",
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
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Zero-width and bidi control characters that can disguise an address
_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)
_LOCAL_PART = re.compile(r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DOMAIN_LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")


def _validate_email(value: Any) -> str:
    """Normalize an email the way the user directory and lockout keys expect it."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = unicodedata.normalize("NFKC", value.translate(_INVISIBLE)).strip().lower()
    if len(cleaned) > 254:
        raise ValueError("email address too long")
    local, sep, domain = cleaned.rpartition("@")
    labels = domain.split(".")
    if not sep or len(labels) < 2 or not _LOCAL_PART.fullmatch(local):
        raise ValueError("invalid email address")
    if not all(_DOMAIN_LABEL.fullmatch(label) for label in labels):
        raise ValueError("invalid email address")
    return cleaned


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    user_id: str
    role: str = "user"
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: datetime


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class SessionResponse(BaseModel):
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
    tracking_available: bool = True


class VerifyRefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
