from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from deepref_auth.config import Settings
from deepref_auth.logging import email_digest, get_logger
from deepref_auth.service.credentials import CredentialHasher
from deepref_auth.service.email import EmailService
from deepref_auth.service.errors import (
    AccountLockedError,
    AccountNotFoundError,
    AuthenticationError,
    ConflictError,
    ExpiredTokenError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
)
from deepref_auth.service.mfa import MfaRateLimiter, MfaService
from deepref_auth.service.password_policy import PasswordPolicy
from deepref_auth.service.passwords import PasswordLifecycleManager, notify
from deepref_auth.service.sessions import SessionManager, TokenPair, lock_minutes_remaining
from deepref_auth.service.tokens import AccessToken
from deepref_auth.storage.common import AccountStore, hash_token, normalize_email
from deepref_auth.storage.errors import ConstraintViolation
from deepref_auth.storage.models import Account

logger = get_logger(__name__)

MAGIC_LINK_SENT_MESSAGE = "If an account exists, a magic link has been sent."


@dataclass
class AuthContext:
    account_id: str
    role: str
    session_id: Optional[str] = None
    mfa_enabled: bool = False
    mfa_verified: bool = False
    jti: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class SignInResult:
    account: Account
    tokens: TokenPair
    mfa_required: bool = False
    challenge_id: Optional[str] = None
    mfa_method: Optional[str] = None


class AuthService:
    """Sign-up, sign-in, second-factor completion and bearer authentication."""

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionManager,
        passwords: PasswordLifecycleManager,
        mfa: MfaService,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        email: EmailService,
        settings: Settings,
        cache=None,
        *,
        mfa_limiter: Optional[MfaRateLimiter] = None,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.passwords = passwords
        self.mfa = mfa
        self.hasher = hasher
        self.policy = policy
        self.email = email
        self.settings = settings
        self.cache = cache
        self.mfa_limiter = mfa_limiter or MfaRateLimiter(
            cache,
            max_attempts=settings.mfa_max_attempts,
            window_seconds=settings.mfa_window_minutes * 60,
        )
        self._denylist: Dict[str, datetime] = {}
        self._denylist_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- account entry ------------------------------------------------------

    def signup(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignInResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("Signup is disabled")
        email = normalize_email(email)
        if self.accounts.get_account_by_email(email) is not None:
            raise ConflictError("Email already registered")
        self.policy.validate(password)
        code = f"{secrets.randbelow(10**6):06d}"
        try:
            account = self.accounts.create_account(
                email,
                self.hasher.hash(password),
                email_verification_code_hash=self.hasher.hash(code),
                email_verification_expires_at=self._now()
                + timedelta(hours=self.settings.email_verification_ttl_hours),
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered") from exc
        logger.info("account_created", account_id=account.id)
        notify(self.email.send_verification_code, account.email, code)
        tokens = self.sessions.issue(account, ip, user_agent)
        return SignInResult(account=account, tokens=tokens)

    def signin(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignInResult:
        now = self._now()
        account = self.accounts.get_account_by_email(email)
        if account is None:
            self.hasher.verify_dummy(password)
            logger.info("signin_unknown_email", email_hash=email_digest(email))
            raise InvalidCredentialsError("Invalid email or password")
        if account.is_locked(now):
            raise AccountLockedError(lock_minutes_remaining(account, now))
        if not account.is_active:
            raise AuthenticationError("Account is inactive. Please contact support")
        if account.password_hash:
            password_ok = self.hasher.verify(account.password_hash, password)
        else:
            password_ok = self.hasher.verify_dummy(password)
        if not password_ok:
            self._record_failure(account, now)
            raise InvalidCredentialsError("Invalid email or password")

        self.accounts.record_successful_login(account.id, now)
        logger.info("signin_succeeded", account_id=account.id)
        return self._complete_primary_factor(account, ip, user_agent)

    def _record_failure(self, account: Account, now: datetime) -> None:
        updated = self.accounts.record_failed_login(
            account.id,
            now,
            max_attempts=self.settings.max_failed_logins,
            lockout=timedelta(minutes=self.settings.account_lockout_minutes),
        )
        attempts = updated.failed_login_attempts if updated else None
        logger.info("signin_failed", account_id=account.id, attempts=attempts)
        if updated is not None and updated.is_locked(now):
            logger.warning(
                "account_locked",
                account_id=account.id,
                attempts=attempts,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
            )
            notify(
                self.email.send_security_alert,
                account.email,
                "Account locked",
                "Account locked due to multiple failed login attempts",
            )

    def _complete_primary_factor(
        self, account: Account, ip: Optional[str], user_agent: Optional[str]
    ) -> SignInResult:
        if not account.mfa_enabled:
            return SignInResult(account=account, tokens=self.sessions.issue(account, ip, user_agent))
        if not self.settings.enable_mfa:
            # Second factor switched off service-wide; the gate must not lock these accounts out
            tokens = self.sessions.issue(account, ip, user_agent, mfa_verified=True)
            return SignInResult(account=account, tokens=tokens)
        if self.mfa.is_trusted_device(account.id, user_agent, ip):
            logger.info("mfa_skipped_trusted_device", account_id=account.id)
            tokens = self.sessions.issue(account, ip, user_agent, mfa_verified=True)
            return SignInResult(account=account, tokens=tokens)
        tokens = self.sessions.issue(account, ip, user_agent, mfa_verified=False)
        challenge = self.mfa.create_challenge(account.id, ip=ip, user_agent=user_agent)
        return SignInResult(
            account=account,
            tokens=tokens,
            mfa_required=True,
            challenge_id=challenge.id,
            mfa_method=challenge.method,
        )

    async def verify_mfa(
        self,
        principal: AuthContext,
        challenge_id: str,
        code: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        trust_device: bool = False,
    ) -> AccessToken:
        if not principal.session_id:
            raise InvalidTokenError("Session is no longer active")
        await self.mfa_limiter.hit(principal.account_id, ip)
        self.mfa.verify_challenge(challenge_id, principal.account_id, code)
        account = self.accounts.get_account(principal.account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        access = self.sessions.elevate_session(principal.session_id, account)
        if trust_device:
            self.mfa.trust_device(account.id, user_agent, ip)
        await self.mfa_limiter.reset(principal.account_id, ip)
        return access

    def verify_email(self, email: str, code: str) -> Account:
        account = self.accounts.get_account_by_email(email)
        if account is None:
            raise InvalidTokenError("Invalid verification code")
        if account.email_verified:
            return account
        if not account.email_verification_code_hash:
            raise InvalidTokenError("Invalid verification code")
        expires_at = account.email_verification_expires_at
        if expires_at is None or expires_at < self._now():
            raise ExpiredTokenError("Verification code has expired")
        if not self.hasher.verify(account.email_verification_code_hash, (code or "").strip()):
            raise InvalidTokenError("Invalid verification code")
        verified = self.accounts.mark_email_verified(account.id)
        logger.info("email_verified", account_id=account.id)
        return verified or account

    def request_magic_link(self, email: str) -> str:
        account = self.accounts.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("magic_link_unknown_email", email_hash=email_digest(email))
            return MAGIC_LINK_SENT_MESSAGE
        ttl = self.settings.magic_link_ttl_minutes
        token = secrets.token_urlsafe(32)
        self.accounts.set_magic_link(
            account.id, hash_token(token), self._now() + timedelta(minutes=ttl)
        )
        logger.info("magic_link_requested", account_id=account.id)
        notify(self.email.send_magic_link, account.email, token, ttl_minutes=ttl)
        return MAGIC_LINK_SENT_MESSAGE

    def verify_magic_link(
        self, token: str, ip: Optional[str] = None, user_agent: Optional[str] = None
    ) -> SignInResult:
        now = self._now()
        account = self.accounts.consume_magic_link(hash_token(token), now) if token else None
        if account is None:
            raise InvalidTokenError("Invalid or expired magic link")
        if account.is_locked(now):
            raise AccountLockedError(lock_minutes_remaining(account, now))
        if not account.is_active:
            raise AuthenticationError("Account is inactive. Please contact support")
        self.accounts.record_successful_login(account.id, now)
        logger.info("magic_link_signin", account_id=account.id)
        return self._complete_primary_factor(account, ip, user_agent)

    def get_account(self, account_id: str) -> Account:
        account = self.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        return account

    # -- bearer tokens ------------------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Not authenticated")
        claims = self.sessions.signer.verify(token)
        jti = claims.get("jti")
        if jti and await self._is_denylisted(jti):
            logger.info("access_token_denylisted", jti=jti)
            raise InvalidTokenError("Token has been revoked")
        return AuthContext(
            account_id=claims["sub"],
            role=claims.get("role", "user"),
            session_id=claims.get("sid"),
            mfa_enabled=bool(claims.get("mfa_enabled")),
            mfa_verified=bool(claims.get("mfa_verified")),
            jti=jti,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    async def _is_denylisted(self, jti: str) -> bool:
        now = self._now()
        with self._denylist_lock:
            expires_at = self._denylist.get(jti)
            if expires_at is not None:
                if expires_at > now:
                    return True
                self._denylist.pop(jti, None)
        if self.cache is None:
            return False
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except Exception as exc:
            # Fail open: the token is still bounded by its own expiry
            logger.warning("denylist_check_failed", jti=jti, error=str(exc))
            return False

    async def revoke_access_token(self, principal: AuthContext) -> None:
        if not principal.jti or principal.expires_at is None:
            return
        ttl = int((principal.expires_at - self._now()).total_seconds())
        if ttl <= 0:
            return
        with self._denylist_lock:
            self._denylist[principal.jti] = principal.expires_at
        if self.cache is not None:
            try:
                await self.cache.denylist_access_token(principal.jti, ttl)
            except Exception as exc:
                logger.warning("denylist_write_failed", jti=principal.jti, error=str(exc))
        logger.info("access_token_revoked", account_id=principal.account_id)


__all__ = ["AuthContext", "AuthService", "SignInResult", "MAGIC_LINK_SENT_MESSAGE"]
