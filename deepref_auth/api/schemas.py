from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bound only; strength rules are enforced by the password policy so
# clients get its rule-specific messages.
MAX_PASSWORD_LENGTH = 128


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "invalid_token",
    "expired_token",
    "weak_password",
    "same_password",
    "no_password_set",
    "session_not_found",
    "mfa_required",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
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
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
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


class _EmailPayload(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_payload_email(cls, value: str) -> str:
        return _validate_email(value)


class SignupRequest(_EmailPayload):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class LoginRequest(_EmailPayload):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class AuthResponse(BaseModel):
    account_id: str
    email: str
    role: str = "user"
    email_verified: bool = False
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    mfa_required: bool = False
    mfa_challenge_id: Optional[str] = None
    mfa_method: Optional[str] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    session_id: str
    expires_at: datetime
    refresh_expires_at: datetime
    mfa_verified: bool = False


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    all_devices: bool = False


class EmailVerificationRequest(_EmailPayload):
    code: str = Field(..., min_length=1, max_length=16)


class MagicLinkRequest(_EmailPayload):
    pass


class MagicLinkVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordResetRequest(_EmailPayload):
    pass


class PasswordResetValidate(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class SessionResponse(BaseModel):
    id: str
    device_name: str
    ip_addr: Optional[str] = None
    last_used_at: datetime
    created_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class MFACodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16, pattern="^[0-9A-Za-z]+$")


class MFAChallengeRequest(BaseModel):
    method: Optional[str] = Field(default=None, pattern="^(totp|email|sms)$")


class MFAChallengeResponse(BaseModel):
    challenge_id: str
    method: str
    expires_at: datetime


class MFAVerifyRequest(BaseModel):
    challenge_id: str = Field(..., max_length=128)
    code: str = Field(..., min_length=1, max_length=16, pattern="^[0-9A-Za-z]+$")
    trust_device: bool = False


class MFAStatusResponse(BaseModel):
    enabled: bool
    verified: bool
    method: Optional[str] = None
    backup_codes_remaining: int = 0


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: str
    ip_addr: Optional[str] = None
    trusted_until: datetime
    last_used_at: Optional[datetime] = None
    created_at: datetime


class AccountResponse(BaseModel):
    id: str
    email: str
    role: str
    email_verified: bool
    mfa_enabled: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
