from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from deepref_auth.logging import get_logger
from deepref_auth.storage.common import normalize_email
from deepref_auth.storage.errors import ConstraintViolation
from deepref_auth.storage.models import (
    SESSION_ACTIVE,
    SESSION_REVOKED,
    SESSION_ROTATED,
    Account,
    MfaChallenge,
    MfaSettings,
    RefreshSession,
    RotationResult,
    TrustedDevice,
)

_Row = TypeVar("_Row")


class MemoryStore:
    """In-process account, session and MFA store.

    All reads and writes go through one re-entrant lock so that the compound
    operations (rotation, token consumption, failed-login counting) happen in
    a single critical section. When ``fs_root`` is given the whole state is
    written to ``<fs_root>/state/auth_store.json`` after every mutation.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        self.mfa_settings: Dict[str, MfaSettings] = {}
        self.challenges: Dict[str, MfaChallenge] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        # RLock so helpers can re-enter while a compound operation holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        role: str = "user",
        email_verification_code_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=role,
                email_verification_code_hash=email_verification_code_hash,
                email_verification_expires_at=email_verification_expires_at,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return dataclasses.replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return dataclasses.replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return dataclasses.replace(account)
            return None

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.reset_token_hash == token_hash:
                    return dataclasses.replace(account)
            return None

    def get_account_by_magic_link(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.magic_link_token_hash == token_hash:
                    return dataclasses.replace(account)
            return None

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.reset_token_hash = token_hash
            account.reset_token_expires_at = expires_at
            self._persist_state()

    def consume_reset_token(
        self, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.reset_token_hash == token_hash),
                None,
            )
            if account is None:
                return None
            account.password_hash = password_hash
            account.reset_token_hash = None
            account.reset_token_expires_at = None
            account.failed_login_attempts = 0
            account.last_failed_login_at = None
            account.locked_until = None
            account.password_changed_at = now
            self._persist_state()
            return dataclasses.replace(account)

    def update_password(
        self, account_id: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.password_changed_at = now
            self._persist_state()
            return dataclasses.replace(account)

    def record_failed_login(
        self,
        account_id: str,
        now: datetime,
        *,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts += 1
            account.last_failed_login_at = now
            if account.failed_login_attempts >= max_attempts:
                account.locked_until = now + lockout
            self._persist_state()
            return dataclasses.replace(account)

    def record_successful_login(self, account_id: str, now: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.failed_login_attempts = 0
            account.last_failed_login_at = None
            account.locked_until = None
            account.last_login_at = now
            self._persist_state()

    def set_magic_link(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.magic_link_token_hash = token_hash
            account.magic_link_expires_at = expires_at
            self._persist_state()

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.magic_link_token_hash == token_hash
                ),
                None,
            )
            if account is None:
                return None
            if account.magic_link_expires_at is None or account.magic_link_expires_at <= now:
                return None
            account.magic_link_token_hash = None
            account.magic_link_expires_at = None
            account.email_verified = True
            account.last_login_at = now
            self._persist_state()
            return dataclasses.replace(account)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            account.email_verification_code_hash = None
            account.email_verification_expires_at = None
            self._persist_state()
            return dataclasses.replace(account)

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.mfa_enabled = enabled
            self._persist_state()

    def set_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return dataclasses.replace(account)

    # refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if any(s.token_hash == session.token_hash for s in self.sessions.values()):
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            self.sessions[session.id] = dataclasses.replace(session)
            self._persist_state()
            return session

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return dataclasses.replace(sess) if sess else None

    def get_refresh_session_by_token(self, token_hash: str) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self._find_by_token(token_hash)
            return dataclasses.replace(sess) if sess else None

    def _find_by_token(self, token_hash: str) -> Optional[RefreshSession]:
        for sess in self.sessions.values():
            if sess.token_hash == token_hash:
                return sess
        return None

    def rotate_refresh_session(
        self, token_hash: str, replacement: RefreshSession, now: datetime
    ) -> RotationResult:
        with self._data_lock:
            current = self._find_by_token(token_hash)
            if current is None:
                return RotationResult("missing")
            snapshot = dataclasses.replace(current)
            if current.status == SESSION_ROTATED:
                return RotationResult("reused", previous=snapshot)
            if current.status == SESSION_REVOKED:
                return RotationResult("revoked", previous=snapshot)
            if current.expires_at <= now:
                return RotationResult("expired", previous=snapshot)
            current.status = SESSION_ROTATED
            current.replaced_by = replacement.id
            current.last_used_at = now
            self.sessions[replacement.id] = dataclasses.replace(replacement)
            self._persist_state()
            return RotationResult(
                "rotated", previous=dataclasses.replace(current), replacement=replacement
            )

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.status != SESSION_ACTIVE:
                return False
            sess.status = SESSION_REVOKED
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_account_sessions(
        self,
        account_id: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.account_id != account_id or sess.id == except_session_id:
                    continue
                if sess.status != SESSION_ACTIVE:
                    continue
                sess.status = SESSION_REVOKED
                sess.revoked_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    def revoke_session_family(self, family_id: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.family_id == family_id and sess.status == SESSION_ACTIVE:
                    sess.status = SESSION_REVOKED
                    sess.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def mark_session_mfa_verified(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.mfa_verified = True
            self._persist_state()

    def list_active_sessions(self, account_id: str, now: datetime) -> List[RefreshSession]:
        with self._data_lock:
            active = [
                dataclasses.replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id and s.is_active(now)
            ]
        return sorted(active, key=lambda s: s.last_used_at, reverse=True)

    def count_sessions(
        self, now: datetime, account_id: Optional[str] = None
    ) -> Dict[str, int]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if account_id is None or s.account_id == account_id
            ]
            return {
                "total": len(rows),
                "active": sum(1 for s in rows if s.is_active(now)),
                "revoked": sum(1 for s in rows if s.status == SESSION_REVOKED),
            }

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # mfa
    def get_mfa_settings(self, account_id: str) -> Optional[MfaSettings]:
        with self._data_lock:
            cfg = self.mfa_settings.get(account_id)
            if not cfg:
                return None
            return dataclasses.replace(cfg, backup_code_hashes=list(cfg.backup_code_hashes))

    def save_mfa_settings(self, settings: MfaSettings) -> MfaSettings:
        with self._data_lock:
            self.mfa_settings[settings.account_id] = dataclasses.replace(
                settings, backup_code_hashes=list(settings.backup_code_hashes)
            )
            self._persist_state()
            return settings

    def delete_mfa_settings(self, account_id: str) -> None:
        with self._data_lock:
            if self.mfa_settings.pop(account_id, None) is not None:
                self._persist_state()

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            cfg = self.mfa_settings.get(account_id)
            if not cfg or code_hash not in cfg.backup_code_hashes:
                return False
            cfg.backup_code_hashes.remove(code_hash)
            self._persist_state()
            return True

    def create_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._data_lock:
            self.challenges[challenge.id] = dataclasses.replace(challenge)
            self._persist_state()
            return challenge

    def get_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return dataclasses.replace(challenge) if challenge else None

    def increment_challenge_attempts(self, challenge_id: str) -> int:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge:
                return 0
            challenge.attempts += 1
            self._persist_state()
            return challenge.attempts

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.verified_at is not None:
                return False
            challenge.verified_at = now
            self._persist_state()
            return True

    def delete_challenge(self, challenge_id: str) -> None:
        with self._data_lock:
            if self.challenges.pop(challenge_id, None) is not None:
                self._persist_state()

    def delete_expired_challenges(self, now: datetime) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.challenges.items() if c.expires_at <= now]
            for cid in stale:
                self.challenges.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            existing = next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.account_id == device.account_id
                    and d.fingerprint == device.fingerprint
                ),
                None,
            )
            if existing is not None:
                existing.trusted_until = device.trusted_until
                existing.device_name = device.device_name
                existing.ip_addr = device.ip_addr
                existing.user_agent = device.user_agent
                existing.last_used_at = device.last_used_at
                existing.revoked = False
                stored = existing
            else:
                stored = dataclasses.replace(device)
                self.trusted_devices[stored.id] = stored
            self._persist_state()
            return dataclasses.replace(stored)

    def get_trusted_device(
        self, account_id: str, fingerprint: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            for device in self.trusted_devices.values():
                if device.account_id == account_id and device.fingerprint == fingerprint:
                    return dataclasses.replace(device)
            return None

    def touch_trusted_device(self, device_id: str, now: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device:
                return
            device.last_used_at = now
            self._persist_state()

    def list_trusted_devices(self, account_id: str, now: datetime) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [
                dataclasses.replace(d)
                for d in self.trusted_devices.values()
                if d.account_id == account_id and d.is_valid(now)
            ]
        return sorted(devices, key=lambda d: d.created_at, reverse=True)

    def revoke_trusted_device(self, account_id: str, device_id: str) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.account_id != account_id or device.revoked:
                return False
            device.revoked = True
            self._persist_state()
            return True

    def revoke_all_trusted_devices(self, account_id: str) -> int:
        with self._data_lock:
            count = 0
            for device in self.trusted_devices.values():
                if device.account_id == account_id and not device.revoked:
                    device.revoked = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_trusted_devices(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                did
                for did, d in self.trusted_devices.items()
                if d.trusted_until <= now or d.revoked
            ]
            for did in stale:
                self.trusted_devices.pop(did, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_row(self, row: Any) -> dict:
        data = dataclasses.asdict(row)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _deserialize_row(self, cls: Type[_Row], data: dict) -> _Row:
        known = {f.name: f for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            field = known.get(key)
            if field is None:
                continue
            if isinstance(value, str) and "datetime" in str(field.type):
                value = self._deserialize_datetime(value)
            kwargs[key] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_row(a) for a in self.accounts.values()],
            "sessions": [self._serialize_row(s) for s in self.sessions.values()],
            "mfa_settings": [self._serialize_row(m) for m in self.mfa_settings.values()],
            "challenges": [self._serialize_row(c) for c in self.challenges.values()],
            "trusted_devices": [
                self._serialize_row(d) for d in self.trusted_devices.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_row(Account, a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_row(RefreshSession, s)
            for s in data.get("sessions", [])
        }
        self.mfa_settings = {
            m["account_id"]: self._deserialize_row(MfaSettings, m)
            for m in data.get("mfa_settings", [])
        }
        self.challenges = {
            c["id"]: self._deserialize_row(MfaChallenge, c)
            for c in data.get("challenges", [])
        }
        self.trusted_devices = {
            d["id"]: self._deserialize_row(TrustedDevice, d)
            for d in data.get("trusted_devices", [])
        }
        self.logger.info(
            "auth_store_state_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True
