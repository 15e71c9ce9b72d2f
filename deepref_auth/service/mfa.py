from __future__ import annotations

import base64
import hashlib
import hmac
import math
import os
import secrets
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken

from deepref_auth.config import Settings
from deepref_auth.logging import get_logger
from deepref_auth.service.credentials import CredentialHasher
from deepref_auth.service.email import EmailService
from deepref_auth.service.errors import (
    AccountNotFoundError,
    ConflictError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidTokenError,
    MfaRequiredError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from deepref_auth.service.passwords import notify
from deepref_auth.service.sessions import extract_device_name
from deepref_auth.storage.common import AccountStore, MfaStore
from deepref_auth.storage.models import MfaChallenge, MfaSettings, TrustedDevice

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 10
METHOD_TOTP = "totp"
METHOD_EMAIL = "email"
METHOD_SMS = "sms"


def check_mfa_gate(principal: Any) -> None:
    """Reject principals that enabled MFA but have not completed it this session.

    Pure function of the token claims: no storage lookup, so an account that
    enables MFA keeps its existing access tokens until they expire.
    """
    if not getattr(principal, "mfa_enabled", False):
        return
    if getattr(principal, "mfa_verified", False):
        return
    raise MfaRequiredError(
        "Multi-factor authentication required", detail={"mfa_required": True}
    )


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except Exception:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    interval: int = TOTP_INTERVAL,
    window: int = 1,
) -> bool:
    # Only ASCII digits can match; anything else would also break compare_digest
    if not code or not (code.isascii() and code.isdigit()):
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def device_fingerprint(user_agent: Optional[str], ip: Optional[str]) -> str:
    return hashlib.sha256(f"{user_agent or ''}:{ip or ''}".encode("utf-8")).hexdigest()


def build_mfa_cipher(key_material: str) -> Fernet:
    """Derive a Fernet cipher for TOTP secrets from arbitrary key material."""
    if not key_material:
        raise ValueError("MFA encryption key material is required")
    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode("utf-8")).digest())
    return Fernet(key)


class MfaRateLimiter:
    """Sliding-window limiter for second-factor attempts per account and IP."""

    def __init__(
        self,
        cache=None,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _subject(account_id: str, ip: Optional[str]) -> str:
        return f"mfa:{account_id}:{ip or 'unknown'}"

    def _record_local(self, subject: str) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            window = self._attempts.setdefault(subject, deque())
            while window and window[0] <= now - self.window_seconds:
                window.popleft()
            if len(window) >= self.max_attempts:
                retry_after = max(1, math.ceil(window[0] + self.window_seconds - now))
                return False, len(window), retry_after
            window.append(now)
            return True, len(window), 0

    async def hit(self, account_id: str, ip: Optional[str]) -> int:
        subject = self._subject(account_id, ip)
        if self.cache is not None:
            allowed, count, retry_after = await self.cache.record_attempt(
                subject, self.max_attempts, self.window_seconds
            )
        else:
            allowed, count, retry_after = self._record_local(subject)
        if not allowed:
            logger.warning(
                "mfa_rate_limited",
                account_id=account_id,
                attempts=count,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                "Too many verification attempts. Please try again later.",
                retry_after=retry_after,
            )
        return count

    async def reset(self, account_id: str, ip: Optional[str]) -> None:
        subject = self._subject(account_id, ip)
        if self.cache is not None:
            await self.cache.clear_attempts(subject)
            return
        with self._lock:
            self._attempts.pop(subject, None)


class MfaService:
    """TOTP enrollment, one-time challenges, backup codes and trusted devices."""

    def __init__(
        self,
        store: MfaStore,
        accounts: AccountStore,
        hasher: CredentialHasher,
        email: EmailService,
        settings: Settings,
        *,
        cipher: Fernet,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.hasher = hasher
        self.email = email
        self.cipher = cipher
        self.issuer = "DeepRef"
        self.challenge_ttl_minutes = settings.mfa_challenge_ttl_minutes
        self.max_attempts = settings.mfa_max_attempts
        self.trusted_device_ttl = timedelta(days=settings.trusted_device_days)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encrypt(self, secret: str) -> str:
        return self.cipher.encrypt(secret.encode("utf-8")).decode("utf-8")

    def _decrypt(self, ciphertext: str) -> Optional[str]:
        try:
            return self.cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("mfa_secret_decrypt_failed")
            return None

    def _enabled_settings(self, account_id: str) -> MfaSettings:
        settings = self.store.get_mfa_settings(account_id)
        if settings is None or not settings.enabled:
            raise ValidationError("MFA is not enabled for this account")
        return settings

    # -- enrollment ---------------------------------------------------------

    def setup_totp(self, account) -> dict:
        existing = self.store.get_mfa_settings(account.id)
        if existing is not None and existing.enabled:
            raise ConflictError("MFA is already enabled")
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        self.store.save_mfa_settings(
            MfaSettings(
                account_id=account.id,
                secret_ciphertext=self._encrypt(secret),
                method=METHOD_TOTP,
                enabled=False,
                verified=False,
            )
        )
        label = quote(f"{self.issuer}:{account.email}")
        uri = (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(self.issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )
        logger.info("mfa_setup_started", account_id=account.id)
        return {"secret": secret, "otpauth_uri": uri}

    def confirm_totp(self, account_id: str, code: str) -> dict:
        settings = self.store.get_mfa_settings(account_id)
        if settings is None:
            raise ValidationError("MFA setup has not been started")
        if settings.enabled:
            raise ConflictError("MFA is already enabled")
        secret = self._decrypt(settings.secret_ciphertext)
        if not secret or not verify_totp(secret, code):
            logger.info("mfa_confirm_rejected", account_id=account_id)
            raise ValidationError("Invalid verification code")
        codes = self._new_backup_codes()
        settings.enabled = True
        settings.verified = True
        settings.backup_code_hashes = [self.hasher.hash(c) for c in codes]
        self.store.save_mfa_settings(settings)
        self.accounts.set_mfa_enabled(account_id, True)
        logger.info("mfa_enabled", account_id=account_id)
        account = self.accounts.get_account(account_id)
        if account is not None:
            notify(self.email.send_mfa_setup_confirmation, account.email)
        return {"enabled": True, "backup_codes": codes}

    def disable(self, account_id: str, code: str) -> None:
        settings = self._enabled_settings(account_id)
        if not self._check_totp(settings, code) and not self._use_backup_code(
            settings, code
        ):
            raise InvalidCredentialsError("Invalid verification code")
        self.store.delete_mfa_settings(account_id)
        self.accounts.set_mfa_enabled(account_id, False)
        devices = self.store.revoke_all_trusted_devices(account_id)
        logger.info("mfa_disabled", account_id=account_id, trusted_devices_revoked=devices)
        account = self.accounts.get_account(account_id)
        if account is not None:
            notify(
                self.email.send_security_alert,
                account.email,
                "Two-factor authentication disabled",
                "Two-factor authentication was turned off for your account.",
            )

    def status(self, account_id: str) -> dict:
        settings = self.store.get_mfa_settings(account_id)
        if settings is None:
            return {
                "enabled": False,
                "verified": False,
                "method": None,
                "backup_codes_remaining": 0,
            }
        return {
            "enabled": settings.enabled,
            "verified": settings.verified,
            "method": settings.method,
            "backup_codes_remaining": len(settings.backup_code_hashes),
        }

    # -- backup codes -------------------------------------------------------

    @staticmethod
    def _new_backup_codes() -> List[str]:
        return [secrets.token_hex(4).upper() for _ in range(BACKUP_CODE_COUNT)]

    def generate_backup_codes(self, account_id: str) -> List[str]:
        """Replace every backup code; old ones stop working immediately."""
        settings = self._enabled_settings(account_id)
        codes = self._new_backup_codes()
        settings.backup_code_hashes = [self.hasher.hash(c) for c in codes]
        self.store.save_mfa_settings(settings)
        logger.info("mfa_backup_codes_generated", account_id=account_id)
        return codes

    def _match_backup_code(self, settings: MfaSettings, code: str) -> Optional[str]:
        """Hash of the backup code matching ``code``, without consuming it."""
        candidate = (code or "").strip().upper()
        if not candidate:
            return None
        for code_hash in settings.backup_code_hashes:
            if self.hasher.verify(code_hash, candidate):
                return code_hash
        return None

    def _consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        if self.store.consume_backup_code(account_id, code_hash):
            logger.info("mfa_backup_code_used", account_id=account_id)
            return True
        return False

    def _use_backup_code(self, settings: MfaSettings, code: str) -> bool:
        code_hash = self._match_backup_code(settings, code)
        return code_hash is not None and self._consume_backup_code(
            settings.account_id, code_hash
        )

    def _check_totp(self, settings: MfaSettings, code: str) -> bool:
        secret = self._decrypt(settings.secret_ciphertext)
        return bool(secret) and verify_totp(secret, (code or "").strip())

    # -- challenges ---------------------------------------------------------

    def create_challenge(
        self,
        account_id: str,
        method: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaChallenge:
        settings = self._enabled_settings(account_id)
        method = method or settings.method or METHOD_TOTP
        if method == METHOD_SMS:
            raise ValidationError("SMS verification is not available")
        if method not in (METHOD_TOTP, METHOD_EMAIL):
            raise ValidationError(f"Unsupported MFA method: {method}")

        code = None
        code_hash = ""
        if method == METHOD_EMAIL:
            code = f"{secrets.randbelow(10**TOTP_DIGITS):0{TOTP_DIGITS}d}"
            code_hash = self.hasher.hash(code)
        challenge = MfaChallenge.new(
            account_id,
            method,
            self.challenge_ttl_minutes,
            code_hash=code_hash,
            max_attempts=self.max_attempts,
            ip_addr=ip,
            user_agent=user_agent,
        )
        self.store.create_challenge(challenge)
        if code is not None:
            account = self.accounts.get_account(account_id)
            if account is None:
                raise AccountNotFoundError("User not found")
            notify(self.email.send_mfa_code, account.email, code)
        logger.info(
            "mfa_challenge_created",
            account_id=account_id,
            challenge_id=challenge.id,
            method=method,
        )
        return challenge

    def verify_challenge(self, challenge_id: str, account_id: str, code: str) -> MfaChallenge:
        now = self._now()
        challenge = self.store.get_challenge(challenge_id)
        if challenge is None or challenge.account_id != account_id:
            raise InvalidTokenError("Invalid challenge")
        if challenge.expires_at <= now:
            self.store.delete_challenge(challenge_id)
            raise ExpiredTokenError("Challenge expired")
        if challenge.verified_at is not None:
            raise InvalidTokenError("Challenge already used")
        if challenge.attempts >= challenge.max_attempts:
            raise InvalidTokenError("Maximum verification attempts exceeded")
        attempts = self.store.increment_challenge_attempts(challenge_id)
        if attempts > challenge.max_attempts:
            raise InvalidTokenError("Maximum verification attempts exceeded")

        matched, backup_hash = self._check_challenge_code(challenge, code)
        if not matched:
            logger.info(
                "mfa_challenge_failed",
                account_id=account_id,
                challenge_id=challenge_id,
                attempts=attempts,
            )
            raise InvalidCredentialsError("Invalid verification code")
        if not self.store.consume_challenge(challenge_id, now):
            raise InvalidTokenError("Challenge already used")
        # Backup codes are spent only once the challenge is ours
        if backup_hash is not None and not self._consume_backup_code(account_id, backup_hash):
            raise InvalidCredentialsError("Invalid verification code")
        challenge.verified_at = now
        challenge.attempts = attempts
        logger.info("mfa_challenge_verified", account_id=account_id, challenge_id=challenge_id)
        return challenge

    def _check_challenge_code(
        self, challenge: MfaChallenge, code: str
    ) -> Tuple[bool, Optional[str]]:
        """Return whether ``code`` matches and the backup-code hash it used, if any."""
        code = (code or "").strip()
        if not code:
            return False, None
        if challenge.method == METHOD_EMAIL and challenge.code_hash:
            if self.hasher.verify(challenge.code_hash, code):
                return True, None
        settings = self.store.get_mfa_settings(challenge.account_id)
        if settings is None or not settings.enabled:
            return False, None
        if challenge.method == METHOD_TOTP and self._check_totp(settings, code):
            return True, None
        backup_hash = self._match_backup_code(settings, code)
        return backup_hash is not None, backup_hash

    def cleanup_expired_challenges(self) -> int:
        count = self.store.delete_expired_challenges(self._now())
        if count:
            logger.info("expired_mfa_challenges_cleaned", count=count)
        return count

    # -- trusted devices ----------------------------------------------------

    def trust_device(
        self, account_id: str, user_agent: Optional[str], ip: Optional[str]
    ) -> TrustedDevice:
        now = self._now()
        device = self.store.upsert_trusted_device(
            TrustedDevice(
                id=str(uuid.uuid4()),
                account_id=account_id,
                fingerprint=device_fingerprint(user_agent, ip),
                trusted_until=now + self.trusted_device_ttl,
                device_name=extract_device_name(user_agent),
                ip_addr=ip,
                user_agent=user_agent,
                last_used_at=now,
                created_at=now,
            )
        )
        logger.info("device_trusted", account_id=account_id, device_id=device.id)
        return device

    def is_trusted_device(
        self, account_id: str, user_agent: Optional[str], ip: Optional[str]
    ) -> bool:
        now = self._now()
        device = self.store.get_trusted_device(account_id, device_fingerprint(user_agent, ip))
        if device is None or not device.is_valid(now):
            return False
        self.store.touch_trusted_device(device.id, now)
        return True

    def list_trusted_devices(self, account_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(account_id, self._now())

    def revoke_trusted_device(self, account_id: str, device_id: str) -> None:
        if not self.store.revoke_trusted_device(account_id, device_id):
            raise NotFoundError("Device not found")
        logger.info("trusted_device_revoked", account_id=account_id, device_id=device_id)

    def revoke_all_trusted_devices(self, account_id: str) -> int:
        count = self.store.revoke_all_trusted_devices(account_id)
        logger.info("trusted_devices_revoked_all", account_id=account_id, count=count)
        return count

    def cleanup_expired_devices(self) -> int:
        count = self.store.delete_expired_trusted_devices(self._now())
        if count:
            logger.info("expired_trusted_devices_cleaned", count=count)
        return count


__all__ = [
    "MfaRateLimiter",
    "MfaService",
    "build_mfa_cipher",
    "check_mfa_gate",
    "device_fingerprint",
    "generate_totp",
    "verify_totp",
]
