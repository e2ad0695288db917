from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "config_missing",
    "invalid_credentials",
    "account_pending",
    "account_locked",
    "account_locked_permanent",
    "session_limit_reached",
    "mfa_required",
    "mfa_invalid_code",
    "mfa_expired",
    "token_expired",
    "token_invalid",
    "session_revoked",
    "session_not_found",
    "password_reused",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

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
_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{6,32}$")


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
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip() or None

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _PHONE_PATTERN.match(value):
            raise ValueError("invalid phone number")
        return value


class RegisterResponse(BaseModel):
    user_id: str
    email: str
    status: str
    verification_email_sent: bool


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class LoginRequest(BaseModel):
    email: str
    # not length-checked; a short guess is still a failed attempt
    password: str = Field(..., min_length=1, max_length=128)
    client_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    token_type: str = "bearer"
    client_class: str = "interactive"
    password_change_required: bool = False


class MfaChallengeResponse(BaseModel):
    mfa_required: Literal[True] = True
    user_id: str
    delivery: str


class MfaVerifyRequest(BaseModel):
    user_id: UUID
    code: str = Field(..., min_length=1, max_length=16)
    client_id: Optional[str] = Field(default=None, max_length=64)


class MfaResendRequest(BaseModel):
    user_id: UUID


class MfaSettingRequest(BaseModel):
    enabled: bool


class LogoutResponse(BaseModel):
    session_id: str
    already_revoked: bool = False


class SessionInfo(BaseModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: Optional[datetime] = None
    ip: Optional[str] = None
    client_id: Optional[str] = None
    client_class: str
    refresh_eligible: bool
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class CurrentSessionResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    expires_at: Optional[datetime] = None
    renewed: bool = False


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordRecoveryRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_recovery_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    email: str
    code: str = Field(..., min_length=1, max_length=16)
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeResponse(BaseModel):
    sessions_revoked: int
    notification_sent: bool
    account_unlocked: bool = False


class UserStatusResponse(BaseModel):
    user_id: str
    email: str
    role: str
    status: str
    mfa_enabled: bool


class SessionsRevokedResponse(BaseModel):
    user_id: str
    sessions_revoked: int


class FailedAttemptSummaryResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    status: str
    attempts: int
    lockouts: int
    resolved: bool
    last_attempt_at: Optional[datetime] = None


class FailedAttemptReportResponse(BaseModel):
    period: str
    since: datetime
    customers: List[FailedAttemptSummaryResponse]
    admins: List[FailedAttemptSummaryResponse]


class SecurityConfigPatch(BaseModel):
    """Partial update of the security configuration; omitted fields keep their value."""

    model_config = ConfigDict(extra="forbid")

    jwt_lifetime: Optional[int] = None
    session_lifetime: Optional[int] = None
    renewal_threshold: Optional[int] = None
    otp_lifetime: Optional[int] = None
    email_verification_lifetime: Optional[int] = None
    max_failed_login_attempts: Optional[int] = None
    block_period_days: Optional[int] = None
    max_blocks_in_n_days: Optional[int] = None
    max_sessions_customer: Optional[int] = None
    max_sessions_admin: Optional[int] = None
    api_session_lifetime: Optional[int] = None
    password_rotation_days: Optional[int] = None
