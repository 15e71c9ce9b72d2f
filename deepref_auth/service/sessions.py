from __future__ import annotations

import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from deepref_auth.config import Settings
from deepref_auth.logging import get_logger
from deepref_auth.service.errors import (
    AccountLockedError,
    ExpiredTokenError,
    InvalidTokenError,
    SessionNotFoundError,
)
from deepref_auth.service.tokens import AccessToken, AccessTokenSigner
from deepref_auth.storage.common import AccountStore, SessionStore, hash_token
from deepref_auth.storage.models import Account, RefreshSession

logger = get_logger(__name__)


def extract_device_name(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"
    if "iPhone" in user_agent:
        return "iPhone"
    if "iPad" in user_agent:
        return "iPad"
    if "Android" in user_agent:
        return "Android Device"
    if "Macintosh" in user_agent:
        return "Mac"
    if "Windows" in user_agent:
        return "Windows PC"
    if "Linux" in user_agent:
        return "Linux"
    return "Unknown Device"


def lock_minutes_remaining(account: Account, now: datetime) -> int:
    if account.locked_until is None:
        return 0
    return max(1, math.ceil((account.locked_until - now).total_seconds() / 60))


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    expires_at: datetime
    refresh_expires_at: datetime
    mfa_verified: bool
    token_type: str = "bearer"


@dataclass
class SessionInfo:
    id: str
    device_name: str
    ip_addr: Optional[str]
    last_used_at: datetime
    created_at: datetime


class SessionManager:
    """Refresh-token lifecycle: issue, rotate, revoke and list sessions.

    Each refresh token is an opaque random value; only its SHA-256 digest is
    stored. A row moves from ``active`` to ``rotated`` or ``revoked`` and never
    back. Presenting a rotated token again is treated as theft: when
    ``revoke_family_on_reuse`` is set every session descended from the same
    sign-in is revoked.
    """

    def __init__(
        self,
        store: SessionStore,
        accounts: AccountStore,
        signer: AccessTokenSigner,
        settings: Settings,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.signer = signer
        self.refresh_ttl_minutes = settings.refresh_token_ttl_minutes
        self.revoke_family_on_reuse = settings.revoke_family_on_reuse

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _sign(self, account: Account, session: RefreshSession) -> AccessToken:
        return self.signer.sign(
            {
                "sub": account.id,
                "sid": session.id,
                "role": account.role,
                "mfa_enabled": account.mfa_enabled,
                "mfa_verified": session.mfa_verified,
            }
        )

    def _pair(self, access: AccessToken, refresh_token: str, session: RefreshSession) -> TokenPair:
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh_token,
            session_id=session.id,
            expires_at=access.expires_at,
            refresh_expires_at=session.expires_at,
            mfa_verified=session.mfa_verified,
        )

    def issue(
        self,
        account: Account,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        mfa_verified: bool = False,
        family_id: Optional[str] = None,
    ) -> TokenPair:
        refresh_token = secrets.token_urlsafe(48)
        session = RefreshSession.new(
            account.id,
            hash_token(refresh_token),
            self.refresh_ttl_minutes,
            family_id=family_id,
            device_name=extract_device_name(user_agent),
            ip_addr=ip,
            user_agent=user_agent,
            mfa_verified=mfa_verified,
        )
        self.store.create_refresh_session(session)
        logger.info(
            "refresh_session_issued",
            account_id=account.id,
            session_id=session.id,
            device=session.device_name,
            mfa_verified=mfa_verified,
        )
        return self._pair(self._sign(account, session), refresh_token, session)

    def _usable_account(self, account_id: str, now: datetime) -> Account:
        account = self.accounts.get_account(account_id)
        if account is None or not account.is_active:
            raise InvalidTokenError("Invalid or revoked refresh token")
        if account.is_locked(now):
            raise AccountLockedError(lock_minutes_remaining(account, now))
        return account

    def refresh(
        self,
        refresh_token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        token_hash = hash_token(refresh_token)
        current = self.store.get_refresh_session_by_token(token_hash)
        if current is None:
            raise InvalidTokenError("Invalid or revoked refresh token")
        account = self._usable_account(current.account_id, now) if current.is_active(now) else None

        replacement_token = secrets.token_urlsafe(48)
        replacement = RefreshSession.new(
            current.account_id,
            hash_token(replacement_token),
            self.refresh_ttl_minutes,
            family_id=current.family_id,
            device_name=extract_device_name(user_agent) if user_agent else current.device_name,
            ip_addr=ip or current.ip_addr,
            user_agent=user_agent or current.user_agent,
            mfa_verified=current.mfa_verified,
            now=now,
        )
        result = self.store.rotate_refresh_session(token_hash, replacement, now)
        if result.outcome == "reused":
            revoked = 0
            if self.revoke_family_on_reuse:
                revoked = self.store.revoke_session_family(current.family_id, now)
            logger.warning(
                "refresh_token_reuse_detected",
                account_id=current.account_id,
                session_id=current.id,
                family_id=current.family_id,
                revoked=revoked,
            )
            raise InvalidTokenError("Invalid or revoked refresh token")
        if result.outcome == "expired":
            raise ExpiredTokenError("Refresh token has expired")
        if result.outcome != "rotated" or account is None:
            raise InvalidTokenError("Invalid or revoked refresh token")

        logger.info(
            "refresh_token_rotated",
            account_id=account.id,
            previous_session_id=current.id,
            session_id=replacement.id,
        )
        return self._pair(self._sign(account, replacement), replacement_token, replacement)

    def logout(self, refresh_token: str, all_devices: bool = False) -> dict:
        now = self._now()
        current = self.store.get_refresh_session_by_token(hash_token(refresh_token))
        if current is None:
            return {"success": True, "message": "Logged out successfully"}
        if all_devices:
            count = self.store.revoke_account_sessions(current.account_id, now)
            logger.info("logout_all_devices", account_id=current.account_id, count=count)
            return {"success": True, "message": f"Logged out from {count} device(s)"}
        self.store.revoke_refresh_session(current.id, now)
        logger.info("logout", account_id=current.account_id, session_id=current.id)
        return {"success": True, "message": "Logged out successfully"}

    def revoke_all_sessions(self, account_id: str) -> dict:
        count = self.store.revoke_account_sessions(account_id, self._now())
        logger.info("sessions_revoked_all", account_id=account_id, count=count)
        return {"success": True, "count": count}

    def revoke_other_sessions(self, account_id: str, keep_session_id: Optional[str]) -> int:
        count = self.store.revoke_account_sessions(
            account_id, self._now(), except_session_id=keep_session_id
        )
        logger.info(
            "sessions_revoked_except_current",
            account_id=account_id,
            kept_session_id=keep_session_id,
            count=count,
        )
        return count

    def list_active_sessions(self, account_id: str) -> List[SessionInfo]:
        return [
            SessionInfo(
                id=s.id,
                device_name=s.device_name,
                ip_addr=s.ip_addr,
                last_used_at=s.last_used_at,
                created_at=s.created_at,
            )
            for s in self.store.list_active_sessions(account_id, self._now())
        ]

    def revoke_session(self, account_id: str, session_id: str) -> None:
        now = self._now()
        session = self.store.get_refresh_session(session_id)
        # Other accounts' rows look exactly like missing ones
        if session is None or session.account_id != account_id or not session.is_active(now):
            raise SessionNotFoundError("Session not found")
        if not self.store.revoke_refresh_session(session_id, now):
            raise SessionNotFoundError("Session not found")
        logger.info("session_revoked", account_id=account_id, session_id=session_id)

    def elevate_session(self, session_id: str, account: Account) -> AccessToken:
        """Mark a pending session MFA-verified and mint an access token saying so."""
        session = self.store.get_refresh_session(session_id)
        if session is None or session.account_id != account.id or not session.is_active(self._now()):
            raise InvalidTokenError("Session is no longer active")
        self.store.mark_session_mfa_verified(session_id)
        session.mfa_verified = True
        logger.info("session_mfa_verified", account_id=account.id, session_id=session_id)
        return self._sign(account, session)

    def token_stats(self, account_id: Optional[str] = None) -> dict:
        return self.store.count_sessions(self._now(), account_id=account_id)

    def cleanup_expired(self) -> int:
        count = self.store.delete_expired_sessions(self._now())
        if count:
            logger.info("expired_sessions_cleaned", count=count)
        return count
