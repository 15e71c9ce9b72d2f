from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from deepref_auth.logging import get_logger
from deepref_auth.storage.common import as_utc, normalize_email
from deepref_auth.storage.errors import ConstraintViolation, SchemaMissingError
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

REQUIRED_TABLES = (
    "account",
    "refresh_session",
    "mfa_settings",
    "mfa_challenge",
    "trusted_device",
)

_ACCOUNT_TIMESTAMPS = (
    "last_failed_login_at",
    "locked_until",
    "password_changed_at",
    "reset_token_expires_at",
    "email_verification_expires_at",
    "magic_link_expires_at",
    "last_login_at",
    "created_at",
)


def _ip_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _account_from_row(row: Dict[str, Any]) -> Account:
    values = {key: as_utc(row.get(key)) for key in _ACCOUNT_TIMESTAMPS}
    return Account(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row.get("password_hash"),
        role=row.get("role") or "user",
        is_active=bool(row.get("is_active", True)),
        email_verified=bool(row.get("email_verified", False)),
        mfa_enabled=bool(row.get("mfa_enabled", False)),
        failed_login_attempts=int(row.get("failed_login_attempts") or 0),
        reset_token_hash=row.get("reset_token_hash"),
        email_verification_code_hash=row.get("email_verification_code_hash"),
        magic_link_token_hash=row.get("magic_link_token_hash"),
        **values,
    )


def _session_from_row(row: Dict[str, Any]) -> RefreshSession:
    return RefreshSession(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_hash=row["token_hash"],
        family_id=str(row["family_id"]),
        created_at=as_utc(row["created_at"]),
        last_used_at=as_utc(row.get("last_used_at") or row["created_at"]),
        expires_at=as_utc(row["expires_at"]),
        device_name=row.get("device_name") or "Unknown Device",
        ip_addr=_ip_text(row.get("ip_addr")),
        user_agent=row.get("user_agent"),
        status=row.get("status") or SESSION_ACTIVE,
        revoked_at=as_utc(row.get("revoked_at")),
        replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
        mfa_verified=bool(row.get("mfa_verified", False)),
    )


def _challenge_from_row(row: Dict[str, Any]) -> MfaChallenge:
    return MfaChallenge(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        method=row["method"],
        expires_at=as_utc(row["expires_at"]),
        code_hash=row.get("code_hash") or "",
        attempts=int(row.get("attempts") or 0),
        max_attempts=int(row.get("max_attempts") or 5),
        verified_at=as_utc(row.get("verified_at")),
        ip_addr=_ip_text(row.get("ip_addr")),
        user_agent=row.get("user_agent"),
        created_at=as_utc(row["created_at"]),
    )


def _device_from_row(row: Dict[str, Any]) -> TrustedDevice:
    return TrustedDevice(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        fingerprint=row["fingerprint"],
        trusted_until=as_utc(row["trusted_until"]),
        device_name=row.get("device_name") or "Unknown Device",
        ip_addr=_ip_text(row.get("ip_addr")),
        user_agent=row.get("user_agent"),
        last_used_at=as_utc(row.get("last_used_at")),
        revoked=bool(row.get("revoked", False)),
        created_at=as_utc(row["created_at"]),
    )


def _settings_from_row(row: Dict[str, Any]) -> MfaSettings:
    codes = row.get("backup_codes") or []
    if isinstance(codes, str):
        codes = json.loads(codes)
    return MfaSettings(
        account_id=str(row["account_id"]),
        secret_ciphertext=row["secret_ciphertext"],
        method=row.get("method") or "totp",
        enabled=bool(row.get("enabled", False)),
        verified=bool(row.get("verified", False)),
        backup_code_hashes=list(codes),
        created_at=as_utc(row["created_at"]),
    )


class PostgresStore:
    """Postgres-backed account, refresh-session and MFA store.

    Compound operations are single conditional statements, except refresh
    rotation, which locks the presented row with ``SELECT ... FOR UPDATE``
    and inserts the replacement in the same transaction.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissingError(missing_tables)

    def close(self) -> None:
        self.pool.close()

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, role,
                        email_verification_code_hash, email_verification_expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        normalize_email(email),
                        password_hash,
                        role,
                        email_verification_code_hash,
                        email_verification_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _account_from_row(row)

    def _fetch_account(self, query: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("SELECT * FROM account WHERE id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
        )

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM account WHERE reset_token_hash = %s", (token_hash,)
        )

    def get_account_by_magic_link(self, token_hash: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM account WHERE magic_link_token_hash = %s", (token_hash,)
        )

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET reset_token_hash = %s, reset_token_expires_at = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, account_id),
            )

    def consume_reset_token(
        self, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        # The WHERE clause makes a concurrent second consumer match zero rows
        return self._fetch_account(
            """
            UPDATE account SET
                password_hash = %s,
                reset_token_hash = NULL,
                reset_token_expires_at = NULL,
                failed_login_attempts = 0,
                last_failed_login_at = NULL,
                locked_until = NULL,
                password_changed_at = %s
            WHERE reset_token_hash = %s
            RETURNING *
            """,
            (password_hash, now, token_hash),
        )

    def update_password(
        self, account_id: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE account SET password_hash = %s, password_changed_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (password_hash, now, account_id),
        )

    def record_failed_login(
        self,
        account_id: str,
        now: datetime,
        *,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE account SET
                failed_login_attempts = failed_login_attempts + 1,
                last_failed_login_at = %s,
                locked_until = CASE
                    WHEN failed_login_attempts + 1 >= %s THEN %s
                    ELSE locked_until
                END
            WHERE id = %s
            RETURNING *
            """,
            (now, max_attempts, now + lockout, account_id),
        )

    def record_successful_login(self, account_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET failed_login_attempts = 0, last_failed_login_at = NULL,
                    locked_until = NULL, last_login_at = %s
                WHERE id = %s
                """,
                (now, account_id),
            )

    def set_magic_link(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET magic_link_token_hash = %s, magic_link_expires_at = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, account_id),
            )

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE account SET
                magic_link_token_hash = NULL,
                magic_link_expires_at = NULL,
                email_verified = TRUE,
                last_login_at = %s
            WHERE magic_link_token_hash = %s AND magic_link_expires_at > %s
            RETURNING *
            """,
            (now, token_hash, now),
        )

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE account SET email_verified = TRUE,
                email_verification_code_hash = NULL,
                email_verification_expires_at = NULL
            WHERE id = %s
            RETURNING *
            """,
            (account_id,),
        )

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET mfa_enabled = %s WHERE id = %s", (enabled, account_id)
            )

    def set_role(self, account_id: str, role: str) -> Optional[Account]:
        return self._fetch_account(
            "UPDATE account SET role = %s WHERE id = %s RETURNING *", (role, account_id)
        )

    # refresh sessions
    def _insert_session(self, conn, session: RefreshSession) -> None:
        conn.execute(
            """
            INSERT INTO refresh_session (id, account_id, token_hash, family_id,
                created_at, last_used_at, expires_at, device_name, ip_addr,
                user_agent, status, mfa_verified)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.account_id,
                session.token_hash,
                session.family_id,
                session.created_at,
                session.last_used_at,
                session.expires_at,
                session.device_name,
                session.ip_addr,
                session.user_agent,
                session.status,
                session.mfa_verified,
            ),
        )

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": session.account_id}
            )
        return session

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def get_refresh_session_by_token(self, token_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def rotate_refresh_session(
        self, token_hash: str, replacement: RefreshSession, now: datetime
    ) -> RotationResult:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM refresh_session WHERE token_hash = %s FOR UPDATE",
                    (token_hash,),
                ).fetchone()
                if not row:
                    return RotationResult("missing")
                current = _session_from_row(row)
                if current.status == SESSION_ROTATED:
                    return RotationResult("reused", previous=current)
                if current.status == SESSION_REVOKED:
                    return RotationResult("revoked", previous=current)
                if current.expires_at <= now:
                    return RotationResult("expired", previous=current)
                updated = conn.execute(
                    """
                    UPDATE refresh_session SET status = %s, replaced_by = %s, last_used_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (SESSION_ROTATED, replacement.id, now, current.id),
                ).fetchone()
                self._insert_session(conn, replacement)
        return RotationResult(
            "rotated", previous=_session_from_row(updated), replacement=replacement
        )

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session SET status = %s, revoked_at = %s
                WHERE id = %s AND status = %s
                RETURNING id
                """,
                (SESSION_REVOKED, now, session_id, SESSION_ACTIVE),
            ).fetchone()
        return bool(row)

    def revoke_account_sessions(
        self,
        account_id: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_session SET status = %s, revoked_at = %s
                WHERE account_id = %s AND status = %s
                  AND (%s::text IS NULL OR id::text <> %s::text)
                RETURNING id
                """,
                (
                    SESSION_REVOKED,
                    now,
                    account_id,
                    SESSION_ACTIVE,
                    except_session_id,
                    except_session_id,
                ),
            ).fetchall()
        return len(rows)

    def revoke_session_family(self, family_id: str, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_session SET status = %s, revoked_at = %s
                WHERE family_id = %s AND status = %s
                RETURNING id
                """,
                (SESSION_REVOKED, now, family_id, SESSION_ACTIVE),
            ).fetchall()
        return len(rows)

    def mark_session_mfa_verified(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_session SET mfa_verified = TRUE WHERE id = %s",
                (session_id,),
            )

    def list_active_sessions(self, account_id: str, now: datetime) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_session
                WHERE account_id = %s AND status = %s AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (account_id, SESSION_ACTIVE, now),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def count_sessions(
        self, now: datetime, account_id: Optional[str] = None
    ) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = %s AND expires_at > %s) AS active,
                    COUNT(*) FILTER (WHERE status = %s) AS revoked
                FROM refresh_session
                WHERE %s::text IS NULL OR account_id::text = %s::text
                """,
                (SESSION_ACTIVE, now, SESSION_REVOKED, account_id, account_id),
            ).fetchone()
        row = row or {}
        return {
            "total": int(row.get("total") or 0),
            "active": int(row.get("active") or 0),
            "revoked": int(row.get("revoked") or 0),
        }

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM refresh_session WHERE expires_at <= %s RETURNING id", (now,)
            ).fetchall()
        return len(rows)

    # mfa
    def get_mfa_settings(self, account_id: str) -> Optional[MfaSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_settings WHERE account_id = %s", (account_id,)
            ).fetchone()
        return _settings_from_row(row) if row else None

    def save_mfa_settings(self, settings: MfaSettings) -> MfaSettings:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_settings (account_id, secret_ciphertext, method, enabled,
                    verified, backup_codes, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (account_id) DO UPDATE SET
                    secret_ciphertext = EXCLUDED.secret_ciphertext,
                    method = EXCLUDED.method,
                    enabled = EXCLUDED.enabled,
                    verified = EXCLUDED.verified,
                    backup_codes = EXCLUDED.backup_codes
                """,
                (
                    settings.account_id,
                    settings.secret_ciphertext,
                    settings.method,
                    settings.enabled,
                    settings.verified,
                    Jsonb(list(settings.backup_code_hashes)),
                    settings.created_at,
                ),
            )
        return settings

    def delete_mfa_settings(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM mfa_settings WHERE account_id = %s", (account_id,))

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        # jsonb "-" drops the matching string element; "?" guards double use
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_settings SET backup_codes = backup_codes - %s
                WHERE account_id = %s AND backup_codes ? %s
                RETURNING account_id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return bool(row)

    def create_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_challenge (id, account_id, method, code_hash, expires_at,
                    attempts, max_attempts, ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.account_id,
                    challenge.method,
                    challenge.code_hash,
                    challenge.expires_at,
                    challenge.attempts,
                    challenge.max_attempts,
                    challenge.ip_addr,
                    challenge.user_agent,
                    challenge.created_at,
                ),
            )
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return _challenge_from_row(row) if row else None

    def increment_challenge_attempts(self, challenge_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE mfa_challenge SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (challenge_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenge SET verified_at = %s
                WHERE id = %s AND verified_at IS NULL
                RETURNING id
                """,
                (now, challenge_id),
            ).fetchone()
        return bool(row)

    def delete_challenge(self, challenge_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM mfa_challenge WHERE id = %s", (challenge_id,))

    def delete_expired_challenges(self, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM mfa_challenge WHERE expires_at <= %s RETURNING id", (now,)
            ).fetchall()
        return len(rows)

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO trusted_device (id, account_id, fingerprint, device_name,
                    ip_addr, user_agent, trusted_until, last_used_at, revoked, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, FALSE, %s)
                ON CONFLICT (account_id, fingerprint) DO UPDATE SET
                    device_name = EXCLUDED.device_name,
                    ip_addr = EXCLUDED.ip_addr,
                    user_agent = EXCLUDED.user_agent,
                    trusted_until = EXCLUDED.trusted_until,
                    last_used_at = EXCLUDED.last_used_at,
                    revoked = FALSE
                RETURNING *
                """,
                (
                    device.id,
                    device.account_id,
                    device.fingerprint,
                    device.device_name,
                    device.ip_addr,
                    device.user_agent,
                    device.trusted_until,
                    device.last_used_at,
                    device.created_at,
                ),
            ).fetchone()
        return _device_from_row(row)

    def get_trusted_device(
        self, account_id: str, fingerprint: str
    ) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE account_id = %s AND fingerprint = %s",
                (account_id, fingerprint),
            ).fetchone()
        return _device_from_row(row) if row else None

    def touch_trusted_device(self, device_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE trusted_device SET last_used_at = %s WHERE id = %s",
                (now, device_id),
            )

    def list_trusted_devices(self, account_id: str, now: datetime) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM trusted_device
                WHERE account_id = %s AND revoked = FALSE AND trusted_until > %s
                ORDER BY created_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [_device_from_row(row) for row in rows]

    def revoke_trusted_device(self, account_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE trusted_device SET revoked = TRUE
                WHERE id = %s AND account_id = %s AND revoked = FALSE
                RETURNING id
                """,
                (device_id, account_id),
            ).fetchone()
        return bool(row)

    def revoke_all_trusted_devices(self, account_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE trusted_device SET revoked = TRUE
                WHERE account_id = %s AND revoked = FALSE
                RETURNING id
                """,
                (account_id,),
            ).fetchall()
        return len(rows)

    def delete_expired_trusted_devices(self, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM trusted_device WHERE trusted_until <= %s OR revoked = TRUE RETURNING id",
                (now,),
            ).fetchall()
        return len(rows)
