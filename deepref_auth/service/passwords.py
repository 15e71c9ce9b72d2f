from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from deepref_auth.config import Settings
from deepref_auth.logging import email_digest, get_logger
from deepref_auth.service.credentials import CredentialHasher
from deepref_auth.service.email import EmailService
from deepref_auth.service.errors import (
    AccountNotFoundError,
    CurrentPasswordIncorrectError,
    ExpiredTokenError,
    InvalidTokenError,
    NoPasswordSetError,
    SamePasswordError,
)
from deepref_auth.service.password_policy import PasswordPolicy
from deepref_auth.service.sessions import SessionManager
from deepref_auth.storage.common import AccountStore, hash_token
from deepref_auth.storage.models import Account

logger = get_logger(__name__)


def notify(send: Callable[..., bool], *args, **kwargs) -> None:
    """Run an email sender without letting delivery problems escape."""
    try:
        if not send(*args, **kwargs):
            logger.warning("email_not_delivered", sender=getattr(send, "__name__", "send"))
    except Exception as exc:
        logger.error(
            "email_send_failed",
            sender=getattr(send, "__name__", "send"),
            error_type=type(exc).__name__,
            error=str(exc),
        )


@dataclass
class ResetRequest:
    token: str
    account_id: str
    expires_at: datetime


class PasswordLifecycleManager:
    """Reset-token issuance and consumption plus authenticated password change."""

    def __init__(
        self,
        store: AccountStore,
        sessions: SessionManager,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.hasher = hasher
        self.policy = policy
        self.email = email
        self.reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def request_reset(self, email: str) -> Optional[ResetRequest]:
        account = self.store.get_account_by_email(email)
        if account is None:
            # Callers answer identically either way
            logger.info("password_reset_unknown_email", email_hash=email_digest(email))
            return None
        token = secrets.token_hex(32)
        expires_at = self._now() + self.reset_ttl
        self.store.set_reset_token(account.id, hash_token(token), expires_at)
        logger.info("password_reset_requested", account_id=account.id)
        notify(
            self.email.send_password_reset,
            account.email,
            token,
            ttl_minutes=int(self.reset_ttl.total_seconds() // 60),
        )
        notify(
            self.email.send_security_alert,
            account.email,
            "Password reset requested",
            "A password reset was requested for your account.",
        )
        return ResetRequest(token=token, account_id=account.id, expires_at=expires_at)

    def validate_reset_token(self, token: str) -> Account:
        account = self.store.get_account_by_reset_token(hash_token(token)) if token else None
        if account is None:
            raise InvalidTokenError("Invalid reset token")
        expires_at = account.reset_token_expires_at
        if expires_at is None or expires_at < self._now():
            raise ExpiredTokenError("Reset token has expired")
        return account

    def reset_password(self, token: str, new_password: str) -> Account:
        account = self.validate_reset_token(token)
        self.policy.validate(new_password)
        if account.password_hash and self.hasher.verify(account.password_hash, new_password):
            raise SamePasswordError("New password cannot be the same as the old password")
        new_hash = self.hasher.hash(new_password)
        updated = self.store.consume_reset_token(hash_token(token), new_hash, self._now())
        if updated is None:
            # Another request consumed the token between validation and update
            raise InvalidTokenError("Invalid reset token")
        result = self.sessions.revoke_all_sessions(updated.id)
        logger.info(
            "password_reset_completed",
            account_id=updated.id,
            sessions_revoked=result["count"],
        )
        notify(
            self.email.send_security_alert,
            updated.email,
            "Password reset",
            "Your password was reset and all sessions were signed out.",
        )
        return updated

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
    ) -> int:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        if not account.password_hash:
            raise NoPasswordSetError("No password set for this account")
        if not self.hasher.verify(account.password_hash, current_password):
            logger.info("password_change_rejected", account_id=account_id)
            raise CurrentPasswordIncorrectError("Current password is incorrect")
        self.policy.validate(new_password)
        if self.hasher.verify(account.password_hash, new_password):
            raise SamePasswordError("New password must be different from current password")
        self.store.update_password(account_id, self.hasher.hash(new_password), self._now())
        revoked = self.sessions.revoke_other_sessions(account_id, current_session_id)
        logger.info("password_changed", account_id=account_id, sessions_revoked=revoked)
        notify(
            self.email.send_security_alert,
            account.email,
            "Password changed",
            "Your password was changed. Other sessions have been logged out.",
        )
        return revoked

    def was_recently_changed(self, account_id: str, within_minutes: int = 5) -> bool:
        account = self.store.get_account(account_id)
        if account is None or account.password_changed_at is None:
            return False
        return self._now() - account.password_changed_at <= timedelta(minutes=within_minutes)
