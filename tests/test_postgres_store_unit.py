from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from deepref_auth.storage.errors import SchemaMissingError
from deepref_auth.storage.models import RefreshSession
from deepref_auth.storage.postgres import (
    PostgresStore,
    _account_from_row,
    _session_from_row,
    _settings_from_row,
)


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Replays scripted result rows and records every statement."""

    def __init__(self, script):
        self.script = list(script)
        self.statements = []

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        rows = self.script.pop(0) if self.script else []
        return FakeResult(rows)

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(script):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.conn = FakeConnection(script)
    store.pool = FakePool(store.conn)
    return store


def _session_row(**overrides):
    # Naive, as some drivers return them
    now = datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)
    row = {
        "id": "s1",
        "account_id": "a1",
        "token_hash": "th",
        "family_id": "s1",
        "created_at": now,
        "last_used_at": None,
        "expires_at": now + timedelta(days=7),
        "device_name": None,
        "ip_addr": "10.0.0.1",
        "user_agent": "agent",
        "status": "active",
        "revoked_at": None,
        "replaced_by": None,
        "mfa_verified": False,
    }
    row.update(overrides)
    return row


class TestRowMappers:
    def test_account_row_coerces_naive_timestamps(self):
        account = _account_from_row(
            {
                "id": "a1",
                "email": "a@example.com",
                "password_hash": "h",
                "role": None,
                "failed_login_attempts": None,
                "locked_until": datetime(2024, 1, 1, 12, 0),
                "created_at": datetime(2024, 1, 1, 11, 0),
            }
        )
        assert account.role == "user"
        assert account.failed_login_attempts == 0
        assert account.locked_until.tzinfo == timezone.utc
        assert account.last_login_at is None

    def test_session_row_defaults(self):
        session = _session_from_row(_session_row())
        assert session.device_name == "Unknown Device"
        assert session.last_used_at == session.created_at
        assert session.expires_at.tzinfo == timezone.utc
        assert session.ip_addr == "10.0.0.1"

    def test_settings_row_accepts_json_text(self):
        settings = _settings_from_row(
            {
                "account_id": "a1",
                "secret_ciphertext": "c",
                "backup_codes": '["h1", "h2"]',
                "created_at": datetime(2024, 1, 1),
            }
        )
        assert settings.backup_code_hashes == ["h1", "h2"]
        assert settings.method == "totp"


class TestStatements:
    def test_missing_tables_reported(self):
        store = _store(
            [
                [{"oid": "account"}],
                [{"oid": "refresh_session"}],
                [{"oid": None}],
                [],
                [{"oid": "trusted_device"}],
            ]
        )
        with pytest.raises(SchemaMissingError) as exc_info:
            store._verify_required_schema()
        assert exc_info.value.tables == ["mfa_challenge", "mfa_settings"]

    def test_rotation_reports_reuse_without_writing(self):
        store = _store([[_session_row(status="rotated")]])
        replacement = RefreshSession.new("a1", "new-hash", 60)
        result = store.rotate_refresh_session("th", replacement, datetime.now(timezone.utc))
        assert result.outcome == "reused"
        assert len(store.conn.statements) == 1
        assert store.conn.statements[0][0].endswith("FOR UPDATE")

    def test_rotation_marks_row_and_inserts_replacement(self):
        rotated = _session_row(status="rotated", replaced_by="s2")
        store = _store([[_session_row()], [rotated], []])
        replacement = RefreshSession.new("a1", "new-hash", 60, family_id="s1")
        result = store.rotate_refresh_session("th", replacement, datetime.now(timezone.utc))
        assert result.outcome == "rotated"
        assert result.previous.replaced_by == "s2"
        assert store.conn.statements[2][0].startswith("INSERT INTO refresh_session")

    def test_count_sessions_handles_empty_row(self):
        store = _store([[]])
        assert store.count_sessions(datetime.now(timezone.utc)) == {
            "total": 0,
            "active": 0,
            "revoked": 0,
        }

    def test_consume_backup_code_is_conditional(self):
        store = _store([[{"account_id": "a1"}], []])
        assert store.consume_backup_code("a1", "h1") is True
        assert store.consume_backup_code("a1", "h1") is False
        query, params = store.conn.statements[0]
        assert "backup_codes ? %s" in query
        assert params == ("h1", "a1", "h1")

    def test_revoke_account_sessions_counts_returned_ids(self):
        store = _store([[{"id": "s1"}, {"id": "s2"}]])
        assert store.revoke_account_sessions("a1", datetime.now(timezone.utc)) == 2

    def test_email_lookups_are_normalized(self):
        store = _store([[]])
        assert store.get_account_by_email("  Mixed@Example.COM ") is None
        assert store.conn.statements[0][1] == ("mixed@example.com",)
