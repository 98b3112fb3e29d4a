from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from taskguard.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str = Field(..., description="Stable error code")
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


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


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
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailRequest):
    password: str
    name: Optional[str] = Field(default=None, max_length=128)
    terms_accepted: bool = False

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AccountResponse(BaseModel):
    id: str
    email: str
    tenant_id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_email_verified: bool
    two_factor_enabled: bool
    linked_providers: List[str] = Field(default_factory=list)
    has_password: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime


class LoginRequest(_EmailRequest):
    # Login does not re-check strength so legacy passwords still authenticate
    password: str = Field(..., max_length=128)
    remember_me: bool = False


class AuthResponse(BaseModel):
    account_id: str
    state: str
    requires_2fa: bool = False
    temp_auth_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    session_id: Optional[str] = None
    expires_in: Optional[int] = None
    backup_code_used: bool = False
    backup_codes_remaining: Optional[int] = None
    account_created: bool = False
    provider_linked: bool = False


class TwoFactorLoginRequest(BaseModel):
    temp_auth_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=1, max_length=16)
    remember_me: bool = False


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    all_sessions: bool = False


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class TwoFactorDisableRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=128)
    code: Optional[str] = Field(default=None, max_length=16)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int


class OAuthStartRequest(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class OAuthCallbackRequest(BaseModel):
    code: str = Field(..., max_length=2048)
    state: str = Field(..., max_length=256)
    remember_me: bool = False


class UnlinkProviderRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=128)


class PasswordResetRequest(_EmailRequest):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=512)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=512)


class ResendVerificationRequest(_EmailRequest):
    pass


class SessionResponse(BaseModel):
    id: str
    device_type: str
    device_name: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    auth_method: str
    created_at: datetime
    last_seen_at: Optional[datetime] = None
    expires_at: datetime
    current: bool = False


class LoginActivityResponse(BaseModel):
    id: str
    status: str
    auth_method: str
    two_factor_used: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str
    created_at: datetime
