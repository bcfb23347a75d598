from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from tourpass.storage.models import Account

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

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


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
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


_PASSWORD_SPECIALS = re.compile(r"[!@#$%^&*()_+={}\[\]:;'\"\\|,.<>/?`~-]")


def _validate_password_strength(value: str) -> str:
    """Minimum 8 chars with lower, upper, digit and a special character."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain a number")
    if not _PASSWORD_SPECIALS.search(value):
        raise ValueError("password must contain a special character")
    return value


def _validate_display_name(value: str) -> str:
    normalized = " ".join(_normalize_unicode(value).split())
    if not 2 <= len(normalized) <= 100:
        raise ValueError("display name must be between 2 and 100 characters")
    if not all(ch.isalpha() or ch in " '-." for ch in normalized):
        raise ValueError("display name contains invalid characters")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("display_name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_display_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


MAX_REFRESH_TOKEN_LENGTH = 512


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_REFRESH_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    # No length bound: logout reports success for any value
    refresh_token: Optional[str] = None


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailRequest(BaseModel):
    """Body for endpoints keyed only by email (resend verification, forgot password)."""

    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AccountResponse(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    is_active: bool = True
    is_archived: bool = False
    email_verified: bool = False
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            role=account.role,
            is_active=account.is_active,
            is_archived=account.is_archived,
            email_verified=account.email_verified,
            created_at=account.created_at,
        )


class AccountListResponse(BaseModel):
    items: List[AccountResponse]


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime


class SessionResponse(TokenResponse):
    account: AccountResponse


class IdentityResponse(BaseModel):
    id: str
    email: str
    display_name: str
    role: str


class SessionStatusResponse(BaseModel):
    authenticated: bool
    account: Optional[IdentityResponse] = None


class ActiveSessionsResponse(BaseModel):
    active_sessions: int


class RevokedSessionsResponse(BaseModel):
    revoked: int


class AccountStatusRequest(BaseModel):
    is_active: Optional[bool] = None
    is_archived: Optional[bool] = None

    @model_validator(mode="after")
    def _require_change(self):
        if self.is_active is None and self.is_archived is None:
            raise ValueError("provide is_active and/or is_archived")
        return self


class AccountRoleRequest(BaseModel):
    role: Literal["client", "admin", "superadmin"]


class PurgeResponse(BaseModel):
    purged: int
