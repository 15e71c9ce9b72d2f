"""Storage ports and helpers shared between the memory and postgres stores.

Services depend on the ``AccountStore``, ``SessionStore`` and ``MfaStore``
protocols only. Every method that must be atomic (refresh rotation, reset
token consumption, failed-login counting, challenge consumption) is a single
call here so each backend can make it one critical section or one statement.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from deepref_auth.storage.models import (
    Account,
    MfaChallenge,
    MfaSettings,
    RefreshSession,
    RotationResult,
    TrustedDevice,
)


def hash_token(value: str) -> str:
    """SHA-256 hex digest used to store refresh, reset and magic-link secrets."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Coerce naive timestamps (as returned by some drivers) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        role: str = "user",
        email_verification_code_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]: ...

    def get_account_by_magic_link(self, token_hash: str) -> Optional[Account]: ...

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def consume_reset_token(
        self, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def update_password(
        self, account_id: str, password_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def record_failed_login(
        self,
        account_id: str,
        now: datetime,
        *,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[Account]: ...

    def record_successful_login(self, account_id: str, now: datetime) -> None: ...

    def set_magic_link(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None: ...

    def set_role(self, account_id: str, role: str) -> Optional[Account]: ...


class SessionStore(Protocol):
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def get_refresh_session_by_token(
        self, token_hash: str
    ) -> Optional[RefreshSession]: ...

    def rotate_refresh_session(
        self, token_hash: str, replacement: RefreshSession, now: datetime
    ) -> RotationResult: ...

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_account_sessions(
        self,
        account_id: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int: ...

    def revoke_session_family(self, family_id: str, now: datetime) -> int: ...

    def mark_session_mfa_verified(self, session_id: str) -> None: ...

    def list_active_sessions(
        self, account_id: str, now: datetime
    ) -> List[RefreshSession]: ...

    def count_sessions(
        self, now: datetime, account_id: Optional[str] = None
    ) -> Dict[str, int]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class MfaStore(Protocol):
    def get_mfa_settings(self, account_id: str) -> Optional[MfaSettings]: ...

    def save_mfa_settings(self, settings: MfaSettings) -> MfaSettings: ...

    def delete_mfa_settings(self, account_id: str) -> None: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...

    def create_challenge(self, challenge: MfaChallenge) -> MfaChallenge: ...

    def get_challenge(self, challenge_id: str) -> Optional[MfaChallenge]: ...

    def increment_challenge_attempts(self, challenge_id: str) -> int: ...

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool: ...

    def delete_challenge(self, challenge_id: str) -> None: ...

    def delete_expired_challenges(self, now: datetime) -> int: ...

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def get_trusted_device(
        self, account_id: str, fingerprint: str
    ) -> Optional[TrustedDevice]: ...

    def touch_trusted_device(self, device_id: str, now: datetime) -> None: ...

    def list_trusted_devices(
        self, account_id: str, now: datetime
    ) -> List[TrustedDevice]: ...

    def revoke_trusted_device(self, account_id: str, device_id: str) -> bool: ...

    def revoke_all_trusted_devices(self, account_id: str) -> int: ...

    def delete_expired_trusted_devices(self, now: datetime) -> int: ...
