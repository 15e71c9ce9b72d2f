"""Tests for TOTP, MFA enrollment, challenges, backup codes and trusted devices."""

import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet

from deepref_auth.service.credentials import CredentialHasher
from deepref_auth.service.errors import (
    ConflictError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidTokenError,
    MfaRequiredError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from deepref_auth.service.mfa import (
    BACKUP_CODE_COUNT,
    MfaRateLimiter,
    MfaService,
    build_mfa_cipher,
    check_mfa_gate,
    device_fingerprint,
    generate_totp,
    verify_totp,
)
from deepref_auth.storage.memory import MemoryStore

# RFC 6238 appendix B seed ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def mfa(store, hasher, email, settings):
    return MfaService(
        store, store, hasher, email, settings, cipher=build_mfa_cipher("unit-test-key")
    )


@pytest.fixture
def account(store):
    return store.create_account("mfa@example.com", "hash")


@pytest.fixture
def enrolled(mfa, account):
    """Account with TOTP confirmed; returns (secret, backup_codes)."""
    secret = mfa.setup_totp(account)["secret"]
    result = mfa.confirm_totp(account.id, generate_totp(secret, time.time()))
    return secret, result["backup_codes"]


class TestMfaGate:
    def test_mfa_disabled_passes(self):
        check_mfa_gate(SimpleNamespace(mfa_enabled=False, mfa_verified=False))

    def test_mfa_verified_passes(self):
        check_mfa_gate(SimpleNamespace(mfa_enabled=True, mfa_verified=True))

    def test_pending_second_factor_rejected(self):
        with pytest.raises(MfaRequiredError) as exc_info:
            check_mfa_gate(SimpleNamespace(mfa_enabled=True, mfa_verified=False))
        err = exc_info.value
        assert err.status_code == 403
        assert err.error_code == "mfa_required"
        assert err.detail == {"mfa_required": True}

    def test_missing_attributes_treated_as_disabled(self):
        check_mfa_gate(object())


class TestTotp:
    def test_rfc6238_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"
        assert generate_totp(RFC_SECRET, 1234567890) == "005924"

    def test_adjacent_steps_accepted(self):
        now = 1_700_000_000.0
        assert verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now - 30), at=now)
        assert verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now + 30), at=now)

    def test_codes_two_steps_away_rejected(self):
        now = 1_700_000_000.0
        assert not verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now - 90), at=now)

    def test_empty_code_rejected(self):
        assert verify_totp(RFC_SECRET, "") is False

    def test_invalid_secret_yields_no_code(self):
        assert generate_totp("not base32 !!", time.time()) == ""
        assert verify_totp("not base32 !!", "123456") is False

    def test_unpadded_lowercase_secret(self):
        assert generate_totp(RFC_SECRET.lower(), 59) == "287082"

    @pytest.mark.parametrize("code", ["\u00e912345", "28708\u0662", "28708a", " 287082"])
    def test_non_digit_codes_rejected(self, code):
        assert verify_totp(RFC_SECRET, code, at=59) is False


class TestHelpers:
    def test_device_fingerprint_stable_and_distinct(self):
        assert device_fingerprint(UA, "1.2.3.4") == device_fingerprint(UA, "1.2.3.4")
        assert device_fingerprint(UA, "1.2.3.4") != device_fingerprint(UA, "1.2.3.5")
        assert len(device_fingerprint(None, None)) == 64

    def test_cipher_round_trip_and_key_required(self):
        cipher = build_mfa_cipher("material")
        assert isinstance(cipher, Fernet)
        assert cipher.decrypt(cipher.encrypt(b"secret")) == b"secret"
        with pytest.raises(ValueError):
            build_mfa_cipher("")


class TestRateLimiter:
    async def test_blocks_after_max_attempts(self):
        clock = [1000.0]
        limiter = MfaRateLimiter(max_attempts=3, window_seconds=60, clock=lambda: clock[0])
        for expected in (1, 2, 3):
            assert await limiter.hit("acct", "1.1.1.1") == expected
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.hit("acct", "1.1.1.1")
        assert exc_info.value.retry_after == 60
        assert exc_info.value.status_code == 429

    async def test_window_slides(self):
        clock = [1000.0]
        limiter = MfaRateLimiter(max_attempts=2, window_seconds=60, clock=lambda: clock[0])
        await limiter.hit("acct", None)
        clock[0] = 1030.0
        await limiter.hit("acct", None)
        clock[0] = 1061.0
        # First attempt has left the window
        assert await limiter.hit("acct", None) == 2

    async def test_subjects_are_independent(self):
        limiter = MfaRateLimiter(max_attempts=1, window_seconds=60)
        await limiter.hit("acct", "1.1.1.1")
        await limiter.hit("acct", "2.2.2.2")
        await limiter.hit("other", "1.1.1.1")

    async def test_reset_clears_window(self):
        limiter = MfaRateLimiter(max_attempts=1, window_seconds=60)
        await limiter.hit("acct", "1.1.1.1")
        await limiter.reset("acct", "1.1.1.1")
        assert await limiter.hit("acct", "1.1.1.1") == 1

    async def test_uses_cache_when_present(self):
        calls = []

        class FakeCache:
            async def record_attempt(self, subject, max_attempts, window_seconds):
                calls.append((subject, max_attempts, window_seconds))
                return (False, 5, 42)

            async def clear_attempts(self, subject):
                calls.append(("clear", subject))

        limiter = MfaRateLimiter(FakeCache(), max_attempts=5, window_seconds=900)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.hit("acct", None)
        assert exc_info.value.retry_after == 42
        await limiter.reset("acct", None)
        assert calls == [("mfa:acct:unknown", 5, 900), ("clear", "mfa:acct:unknown")]


class TestEnrollment:
    def test_setup_returns_secret_and_uri(self, mfa, store, account):
        result = mfa.setup_totp(account)
        assert len(result["secret"]) == 32
        assert result["otpauth_uri"].startswith("otpauth://totp/DeepRef%3Amfa%40example.com?")
        assert f"secret={result['secret']}" in result["otpauth_uri"]
        assert "issuer=DeepRef" in result["otpauth_uri"]
        stored = store.get_mfa_settings(account.id)
        assert stored.enabled is False
        # Secret is encrypted at rest
        assert result["secret"] not in stored.secret_ciphertext

    def test_confirm_enables_and_returns_backup_codes(self, mfa, store, email, account):
        secret = mfa.setup_totp(account)["secret"]
        result = mfa.confirm_totp(account.id, generate_totp(secret, time.time()))
        assert result["enabled"] is True
        assert len(result["backup_codes"]) == BACKUP_CODE_COUNT
        assert len(set(result["backup_codes"])) == BACKUP_CODE_COUNT
        assert store.get_account(account.id).mfa_enabled is True
        assert email.of_kind("mfa_setup_confirmation")

    def test_confirm_wrong_code(self, mfa, store, account):
        mfa.setup_totp(account)
        with pytest.raises(ValidationError) as exc_info:
            mfa.confirm_totp(account.id, "000000x")
        assert exc_info.value.message == "Invalid verification code"
        assert store.get_account(account.id).mfa_enabled is False

    def test_confirm_without_setup(self, mfa, account):
        with pytest.raises(ValidationError):
            mfa.confirm_totp(account.id, "123456")

    def test_setup_when_enabled_conflicts(self, mfa, account, enrolled):
        with pytest.raises(ConflictError):
            mfa.setup_totp(account)

    def test_status(self, mfa, account, enrolled):
        assert mfa.status(account.id) == {
            "enabled": True,
            "verified": True,
            "method": "totp",
            "backup_codes_remaining": BACKUP_CODE_COUNT,
        }

    def test_status_without_settings(self, mfa, account):
        assert mfa.status(account.id)["enabled"] is False

    def test_disable_with_totp(self, mfa, store, email, account, enrolled):
        secret, _ = enrolled
        mfa.trust_device(account.id, UA, "1.2.3.4")
        mfa.disable(account.id, generate_totp(secret, time.time()))
        assert store.get_mfa_settings(account.id) is None
        assert store.get_account(account.id).mfa_enabled is False
        assert mfa.list_trusted_devices(account.id) == []
        assert email.of_kind("security_alert")[-1]["subject"] == "Two-factor authentication disabled"

    def test_disable_with_backup_code(self, mfa, store, account, enrolled):
        _, codes = enrolled
        mfa.disable(account.id, codes[0].lower())
        assert store.get_account(account.id).mfa_enabled is False

    def test_disable_with_wrong_code(self, mfa, account, enrolled):
        with pytest.raises(InvalidCredentialsError):
            mfa.disable(account.id, "nope")

    def test_disable_when_not_enabled(self, mfa, account):
        with pytest.raises(ValidationError):
            mfa.disable(account.id, "123456")


class TestBackupCodes:
    def test_regenerate_invalidates_old_codes(self, mfa, account, enrolled):
        _, old_codes = enrolled
        new_codes = mfa.generate_backup_codes(account.id)
        assert set(new_codes).isdisjoint(old_codes)
        with pytest.raises(InvalidCredentialsError):
            mfa.disable(account.id, old_codes[0])

    def test_backup_code_is_single_use(self, mfa, account, enrolled):
        _, codes = enrolled
        first = mfa.create_challenge(account.id)
        mfa.verify_challenge(first.id, account.id, codes[0])
        assert mfa.status(account.id)["backup_codes_remaining"] == BACKUP_CODE_COUNT - 1

        second = mfa.create_challenge(account.id)
        with pytest.raises(InvalidCredentialsError):
            mfa.verify_challenge(second.id, account.id, codes[0])

    def test_backup_code_kept_when_challenge_lost_to_another_request(
        self, mfa, store, account, enrolled
    ):
        _, codes = enrolled
        challenge = mfa.create_challenge(account.id)
        # Another request claims the challenge after the code checks out
        store.consume_challenge = lambda challenge_id, now: False
        with pytest.raises(InvalidTokenError) as exc_info:
            mfa.verify_challenge(challenge.id, account.id, codes[0])
        assert exc_info.value.message == "Challenge already used"
        assert mfa.status(account.id)["backup_codes_remaining"] == BACKUP_CODE_COUNT
        del store.consume_challenge

        retry = mfa.create_challenge(account.id)
        mfa.verify_challenge(retry.id, account.id, codes[0])
        assert mfa.status(account.id)["backup_codes_remaining"] == BACKUP_CODE_COUNT - 1

    def test_non_ascii_code_is_rejected_not_raised(self, mfa, account, enrolled):
        challenge = mfa.create_challenge(account.id)
        with pytest.raises(InvalidCredentialsError):
            mfa.verify_challenge(challenge.id, account.id, "\u00e912345")

    def test_regenerate_requires_enabled(self, mfa, account):
        with pytest.raises(ValidationError):
            mfa.generate_backup_codes(account.id)


class TestChallenges:
    def test_totp_challenge_verifies(self, mfa, account, enrolled):
        secret, _ = enrolled
        challenge = mfa.create_challenge(account.id, ip="1.2.3.4", user_agent=UA)
        assert challenge.method == "totp"
        verified = mfa.verify_challenge(challenge.id, account.id, generate_totp(secret, time.time()))
        assert verified.verified_at is not None
        assert verified.attempts == 1

    def test_challenge_is_single_use(self, mfa, account, enrolled):
        secret, _ = enrolled
        challenge = mfa.create_challenge(account.id)
        mfa.verify_challenge(challenge.id, account.id, generate_totp(secret, time.time()))
        with pytest.raises(InvalidTokenError) as exc_info:
            mfa.verify_challenge(challenge.id, account.id, generate_totp(secret, time.time()))
        assert exc_info.value.message == "Challenge already used"

    def test_email_challenge_sends_code(self, mfa, email, account, enrolled):
        challenge = mfa.create_challenge(account.id, method="email")
        [message] = email.of_kind("mfa_code")
        assert len(message["code"]) == 6
        assert challenge.code_hash and message["code"] not in challenge.code_hash
        mfa.verify_challenge(challenge.id, account.id, message["code"])

    def test_sms_not_available(self, mfa, account, enrolled):
        with pytest.raises(ValidationError) as exc_info:
            mfa.create_challenge(account.id, method="sms")
        assert exc_info.value.message == "SMS verification is not available"

    def test_challenge_requires_enabled_mfa(self, mfa, account):
        with pytest.raises(ValidationError):
            mfa.create_challenge(account.id)

    def test_wrong_account_is_invalid(self, mfa, store, account, enrolled):
        other = store.create_account("other@example.com", "hash")
        challenge = mfa.create_challenge(account.id)
        with pytest.raises(InvalidTokenError) as exc_info:
            mfa.verify_challenge(challenge.id, other.id, "123456")
        assert exc_info.value.message == "Invalid challenge"

    def test_expired_challenge_is_deleted(self, mfa, store, account, enrolled):
        challenge = mfa.create_challenge(account.id)
        store.challenges[challenge.id].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        with pytest.raises(ExpiredTokenError):
            mfa.verify_challenge(challenge.id, account.id, "123456")
        assert store.get_challenge(challenge.id) is None

    def test_attempts_are_capped(self, mfa, account, enrolled):
        secret, _ = enrolled
        challenge = mfa.create_challenge(account.id)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                mfa.verify_challenge(challenge.id, account.id, "not-a-code")
        with pytest.raises(InvalidTokenError) as exc_info:
            mfa.verify_challenge(challenge.id, account.id, generate_totp(secret, time.time()))
        assert exc_info.value.message == "Maximum verification attempts exceeded"

    def test_cleanup_expired_challenges(self, mfa, store, account, enrolled):
        stale = mfa.create_challenge(account.id)
        mfa.create_challenge(account.id)
        store.challenges[stale.id].expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        assert mfa.cleanup_expired_challenges() == 1


class TestTrustedDevices:
    def test_trust_and_recognize(self, mfa, account):
        device = mfa.trust_device(account.id, UA, "1.2.3.4")
        assert device.device_name == "Mac"
        assert device.trusted_until > datetime.now(timezone.utc) + timedelta(days=29)
        assert mfa.is_trusted_device(account.id, UA, "1.2.3.4") is True
        assert mfa.is_trusted_device(account.id, UA, "9.9.9.9") is False

    def test_expired_device_not_trusted(self, mfa, store, account):
        device = mfa.trust_device(account.id, UA, "1.2.3.4")
        store.trusted_devices[device.id].trusted_until = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )
        assert mfa.is_trusted_device(account.id, UA, "1.2.3.4") is False
        assert mfa.cleanup_expired_devices() == 1

    def test_revoke_single_device(self, mfa, account):
        device = mfa.trust_device(account.id, UA, "1.2.3.4")
        mfa.revoke_trusted_device(account.id, device.id)
        assert mfa.is_trusted_device(account.id, UA, "1.2.3.4") is False
        with pytest.raises(NotFoundError):
            mfa.revoke_trusted_device(account.id, device.id)

    def test_revoke_all_devices(self, mfa, account):
        mfa.trust_device(account.id, UA, "1.2.3.4")
        mfa.trust_device(account.id, UA, "5.6.7.8")
        assert len(mfa.list_trusted_devices(account.id)) == 2
        assert mfa.revoke_all_trusted_devices(account.id) == 2
        assert mfa.list_trusted_devices(account.id) == []
