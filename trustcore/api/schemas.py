from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "AUTHENTICATION_ERROR",
    "AUTHORIZATION_ERROR",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "ACCOUNT_LOCKED",
    "RATE_LIMIT_ERROR",
    "SERVER_ERROR",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailRequest):
    password: str = Field(..., min_length=1, max_length=128)
    username: Optional[str] = Field(default=None, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    organization_name: Optional[str] = Field(default=None, min_length=2, max_length=100)


class LoginRequest(_EmailRequest):
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False


class TwoFactorValidateRequest(BaseModel):
    pending_token: str = Field(..., max_length=1024)
    code: str = Field(..., min_length=6, max_length=16)
    is_backup_code: bool = False


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class ForgotPasswordRequest(_EmailRequest):
    pass


class ResendVerificationRequest(_EmailRequest):
    pass


class UnlockRequest(_EmailRequest):
    pass


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ResetPasswordRequest(TokenRequest):
    password: str = Field(..., min_length=1, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class ImpersonateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)


class RoleChangeRequest(BaseModel):
    role_name: str = Field(..., min_length=1, max_length=64)
    organization_id: Optional[str] = Field(default=None, max_length=128)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    role: str
    is_logged_in: bool
    csrf_token: Optional[str] = None
    organization: Optional[dict] = None
    impersonating: bool = False
    impersonation_minutes_remaining: Optional[int] = None
    capabilities: dict = Field(default_factory=dict)


class DeviceResponse(BaseModel):
    series: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_used_at: str
    created_at: str
    expires_at: str
    current: bool = False


class AuditEventResponse(BaseModel):
    id: str
    action: str
    category: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: str
