from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


SESSION_ACTIVE = "active"
SESSION_ROTATED = "rotated"
SESSION_REVOKED = "revoked"


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    mfa_enabled: bool = False
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    email_verification_code_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    magic_link_token_hash: Optional[str] = None
    magic_link_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshSession:
    """One signed-in device. Rows are never reused once rotated or revoked."""

    id: str
    account_id: str
    token_hash: str
    family_id: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    device_name: str = "Unknown Device"
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    status: str = SESSION_ACTIVE
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    mfa_verified: bool = False

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        family_id: Optional[str] = None,
        device_name: str = "Unknown Device",
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        mfa_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> "RefreshSession":
        now = now or utcnow()
        session_id = str(uuid.uuid4())
        return cls(
            id=session_id,
            account_id=account_id,
            token_hash=token_hash,
            family_id=family_id or session_id,
            created_at=now,
            last_used_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device_name=device_name,
            ip_addr=ip_addr,
            user_agent=user_agent,
            mfa_verified=mfa_verified,
        )

    def is_active(self, now: datetime) -> bool:
        return self.status == SESSION_ACTIVE and self.expires_at > now


@dataclass
class RotationResult:
    """Outcome of an atomic refresh-token rotation.

    ``outcome`` is one of ``rotated``, ``missing``, ``expired``, ``reused``
    (the presented row was already rotated) or ``revoked``.
    """

    outcome: str
    previous: Optional[RefreshSession] = None
    replacement: Optional[RefreshSession] = None


@dataclass
class MfaSettings:
    account_id: str
    secret_ciphertext: str
    method: str = "totp"
    enabled: bool = False
    verified: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaChallenge:
    id: str
    account_id: str
    method: str
    expires_at: datetime
    code_hash: str = ""
    attempts: int = 0
    max_attempts: int = 5
    verified_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        method: str,
        ttl_minutes: int,
        *,
        code_hash: str = "",
        max_attempts: int = 5,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "MfaChallenge":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            method=method,
            expires_at=now + timedelta(minutes=ttl_minutes),
            code_hash=code_hash,
            max_attempts=max_attempts,
            ip_addr=ip_addr,
            user_agent=user_agent,
            created_at=now,
        )


@dataclass
class TrustedDevice:
    id: str
    account_id: str
    fingerprint: str
    trusted_until: datetime
    device_name: str = "Unknown Device"
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    last_used_at: Optional[datetime] = None
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: datetime) -> bool:
        return not self.revoked and self.trusted_until > now
