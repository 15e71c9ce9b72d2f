"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- Signup, email verification and login
- Refresh rotation, reuse detection and logout
- Password reset and password change
- Session listing and revocation
- MFA setup, login challenge and verification
- Magic links and admin endpoints
"""

import base64
import json
import time

import pytest
from fastapi.testclient import TestClient

from deepref_auth import app as app_module
from deepref_auth.service.mfa import generate_totp
from deepref_auth.service.runtime import get_runtime

PASSWORD = "Tr0ub4dor&Zx"
NEW_PASSWORD = "N3w!Secure#Pw"
EMAIL = "testuser@example.com"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing mail from the shared runtime."""
    sent = []
    email_service = get_runtime().email

    def recorder(kind):
        def _send(to_email, *args, **kwargs):
            sent.append({"kind": kind, "to": to_email, "args": args, "kwargs": kwargs})
            return True

        return _send

    for kind in (
        "send_password_reset",
        "send_security_alert",
        "send_verification_code",
        "send_magic_link",
        "send_mfa_code",
        "send_mfa_setup_confirmation",
    ):
        monkeypatch.setattr(email_service, kind, recorder(kind))
    return sent


def _of_kind(outbox, kind):
    return [m for m in outbox if m["kind"] == kind]


def _signup(client, email=EMAIL, password=PASSWORD):
    response = client.post("/v1/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _login(client, email=EMAIL, password=PASSWORD, **kwargs):
    return client.post(
        "/v1/auth/login", json={"email": email, "password": password}, **kwargs
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _segment(data):
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestSignupFlow:
    def test_signup_creates_account(self, client):
        data = _signup(client)
        assert data["email"] == EMAIL
        assert data["email_verified"] is False
        assert data["session_id"]
        assert data["token_type"] == "bearer"
        assert data["mfa_required"] is False

        me = client.get("/v1/me", headers=_bearer(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["id"] == data["account_id"]

    def test_signup_rejects_duplicate_email(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/signup", json={"email": EMAIL.upper(), "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_validates_email_format(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": "invalid-email", "password": PASSWORD}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_signup_validates_password_strength(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": EMAIL, "password": "short"}
        )
        assert response.status_code == 400
        body = response.json()["error"]
        assert body["code"] == "weak_password"
        assert body["message"] == "Password must be at least 8 characters long"
        assert body["details"] == {"rule": "min_length"}

    def test_verify_email_with_code(self, client, outbox):
        _signup(client)
        code = _of_kind(outbox, "send_verification_code")[0]["args"][0]
        response = client.post("/v1/auth/verify-email", json={"email": EMAIL, "code": code})
        assert response.status_code == 200
        assert response.json()["data"] == {"email_verified": True}

    def test_verify_email_wrong_code(self, client):
        _signup(client)
        response = client.post("/v1/auth/verify-email", json={"email": EMAIL, "code": "nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestLoginFlow:
    def test_login_success(self, client):
        _signup(client)
        response = _login(client)
        assert response.status_code == 200
        assert response.json()["data"]["access_token"]
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_login_wrong_password(self, client):
        _signup(client)
        response = _login(client, password="Wr0ng!Guess#")
        assert response.status_code == 401
        body = response.json()["error"]
        assert body["code"] == "invalid_credentials"
        assert body["message"] == "Invalid email or password"

    def test_login_unknown_email_looks_the_same(self, client):
        response = _login(client, email="ghost@example.com")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid email or password"

    def test_login_rate_limited(self, client):
        _signup(client)
        for _ in range(5):
            _login(client, password="Wr0ng!Guess#")
        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_me_requires_token(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_garbage_token(self, client):
        response = client.get("/v1/me", headers=_bearer("not-a-jwt"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_non_ascii_signature_is_invalid_token(self, client):
        data = _signup(client)
        header = _segment({"alg": "HS256", "typ": "JWT"})
        # latin-1 bytes reach the server as a non-ASCII header value
        authorization = f"Bearer {header}.{_segment({})}.sig\u00e9".encode("latin-1")
        response = client.get("/v1/me", headers={"Authorization": authorization})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

        logout = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers={"Authorization": authorization},
        )
        assert logout.status_code == 200


class TestRefreshAndLogout:
    def test_refresh_rotates_token(self, client):
        data = _signup(client)
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != data["refresh_token"]
        assert rotated["session_id"] != data["session_id"]

    def test_refresh_reuse_revokes_family(self, client):
        data = _signup(client)
        rotated = client.post(
            "/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}
        ).json()["data"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

        descendant = client.post(
            "/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]}
        )
        assert descendant.status_code == 401

    def test_logout_revokes_refresh_and_access_token(self, client):
        data = _signup(client)
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=_bearer(data["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["success"] is True

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401
        me = client.get("/v1/me", headers=_bearer(data["access_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["message"] == "Token has been revoked"

    def test_logout_all_devices(self, client):
        first = _signup(client)
        second = _login(client).json()["data"]
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": first["refresh_token"], "all_devices": True},
        )
        assert response.json()["data"]["message"] == "Logged out from 2 device(s)"
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert refresh.status_code == 401

    def test_signup_signin_refresh_logout_everywhere(self, client):
        _signup(client)
        signed_in = _login(client).json()["data"]
        rotated = client.post(
            "/v1/auth/refresh", json={"refresh_token": signed_in["refresh_token"]}
        ).json()["data"]
        client.post(
            "/v1/auth/logout",
            json={"refresh_token": rotated["refresh_token"], "all_devices": True},
        )
        final = client.post("/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
        assert final.status_code == 401


class TestPasswordReset:
    def test_reset_flow(self, client, outbox):
        data = _signup(client)
        response = client.post("/v1/auth/reset/request", json={"email": EMAIL})
        assert response.status_code == 200
        token = _of_kind(outbox, "send_password_reset")[0]["args"][0]

        valid = client.post("/v1/auth/reset/validate", json={"token": token})
        assert valid.json()["data"] == {"valid": True, "email": EMAIL}

        confirm = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert confirm.status_code == 200
        assert confirm.json()["data"]["message"] == "Password has been reset successfully"

        assert _login(client, password=NEW_PASSWORD).status_code == 200
        old_refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert old_refresh.status_code == 401

        reuse = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": "Gr8!Horizon$9"}
        )
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "invalid_token"

    def test_reset_request_for_unknown_email_is_indistinguishable(self, client, outbox):
        _signup(client)
        known = client.post("/v1/auth/reset/request", json={"email": EMAIL})
        unknown = client.post("/v1/auth/reset/request", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(_of_kind(outbox, "send_password_reset")) == 1

    def test_reset_same_password_rejected(self, client, outbox):
        _signup(client)
        client.post("/v1/auth/reset/request", json={"email": EMAIL})
        token = _of_kind(outbox, "send_password_reset")[0]["args"][0]
        response = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": PASSWORD}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "same_password"


class TestPasswordChangeAndSessions:
    def test_change_password_revokes_other_sessions(self, client):
        current = _signup(client)
        other = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_bearer(current["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1

        assert client.post(
            "/v1/auth/refresh", json={"refresh_token": other["refresh_token"]}
        ).status_code == 401
        assert client.post(
            "/v1/auth/refresh", json={"refresh_token": current["refresh_token"]}
        ).status_code == 200
        assert client.get("/v1/me", headers=_bearer(current["access_token"])).status_code == 200

    def test_change_password_wrong_current(self, client):
        data = _signup(client)
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "Wr0ng!Guess#", "new_password": NEW_PASSWORD},
            headers=_bearer(data["access_token"]),
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Current password is incorrect"

    def test_list_and_revoke_sessions(self, client):
        current = _signup(client)
        other = _login(client).json()["data"]
        headers = _bearer(current["access_token"])

        listed = client.get("/v1/auth/sessions", headers=headers).json()["data"]["sessions"]
        assert {s["id"] for s in listed} == {current["session_id"], other["session_id"]}
        assert [s["current"] for s in listed if s["id"] == current["session_id"]] == [True]

        response = client.delete(f"/v1/auth/sessions/{other['session_id']}", headers=headers)
        assert response.status_code == 200
        again = client.delete(f"/v1/auth/sessions/{other['session_id']}", headers=headers)
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "session_not_found"

    def test_revoke_all_sessions(self, client):
        data = _signup(client)
        _login(client)
        headers = _bearer(data["access_token"])
        response = client.post("/v1/auth/sessions/revoke-all", headers=headers)
        assert response.json()["data"] == {"success": True, "count": 2}
        assert client.get("/v1/me", headers=headers).status_code == 401


class TestMfaFlow:
    def _enable_mfa(self, client, access_token):
        headers = _bearer(access_token)
        setup = client.post("/v1/auth/mfa/setup", headers=headers)
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret"]
        confirm = client.post(
            "/v1/auth/mfa/confirm",
            json={"code": generate_totp(secret, time.time())},
            headers=headers,
        )
        assert confirm.status_code == 200
        return secret, confirm.json()["data"]["backup_codes"]

    def test_login_requires_second_factor(self, client):
        data = _signup(client)
        secret, _ = self._enable_mfa(client, data["access_token"])

        login = _login(client).json()["data"]
        assert login["mfa_required"] is True
        assert login["mfa_challenge_id"]
        pending = _bearer(login["access_token"])

        gated = client.get("/v1/me", headers=pending)
        assert gated.status_code == 403
        assert gated.json()["error"]["code"] == "mfa_required"

        verify = client.post(
            "/v1/auth/mfa/verify",
            json={
                "challenge_id": login["mfa_challenge_id"],
                "code": generate_totp(secret, time.time()),
            },
            headers=pending,
        )
        assert verify.status_code == 200
        elevated = verify.json()["data"]
        assert elevated["mfa_verified"] is True

        me = client.get("/v1/me", headers=_bearer(elevated["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["mfa_enabled"] is True

        # Rotation keeps the session verified
        rotated = client.post(
            "/v1/auth/refresh", json={"refresh_token": login["refresh_token"]}
        ).json()["data"]
        assert rotated["mfa_verified"] is True

    def test_non_ascii_codes_fail_validation(self, client):
        data = _signup(client)
        headers = _bearer(data["access_token"])
        client.post("/v1/auth/mfa/setup", headers=headers)
        confirm = client.post(
            "/v1/auth/mfa/confirm", json={"code": "\u00e912345"}, headers=headers
        )
        assert confirm.status_code == 400
        assert confirm.json()["error"]["code"] == "validation_error"

        self._enable_mfa(client, data["access_token"])
        login = _login(client).json()["data"]
        verify = client.post(
            "/v1/auth/mfa/verify",
            json={"challenge_id": login["mfa_challenge_id"], "code": "28708\u0662"},
            headers=_bearer(login["access_token"]),
        )
        assert verify.status_code == 400
        assert verify.json()["error"]["code"] == "validation_error"

    def test_wrong_code_rejected(self, client):
        data = _signup(client)
        self._enable_mfa(client, data["access_token"])
        login = _login(client).json()["data"]
        response = client.post(
            "/v1/auth/mfa/verify",
            json={"challenge_id": login["mfa_challenge_id"], "code": "000000x"},
            headers=_bearer(login["access_token"]),
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_email_challenge(self, client, outbox):
        data = _signup(client)
        self._enable_mfa(client, data["access_token"])
        login = _login(client).json()["data"]
        pending = _bearer(login["access_token"])

        challenge = client.post(
            "/v1/auth/mfa/challenge", json={"method": "email"}, headers=pending
        )
        assert challenge.status_code == 200
        challenge_id = challenge.json()["data"]["challenge_id"]
        code = _of_kind(outbox, "send_mfa_code")[0]["args"][0]

        verify = client.post(
            "/v1/auth/mfa/verify",
            json={"challenge_id": challenge_id, "code": code},
            headers=pending,
        )
        assert verify.status_code == 200

    def test_status_backup_codes_and_disable(self, client):
        data = _signup(client)
        secret, codes = self._enable_mfa(client, data["access_token"])
        # The enrolling session predates MFA, so its token still passes the gate
        headers = _bearer(data["access_token"])

        status = client.get("/v1/auth/mfa/status", headers=headers).json()["data"]
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 10

        regenerated = client.post("/v1/auth/mfa/backup-codes", headers=headers)
        assert len(regenerated.json()["data"]["backup_codes"]) == 10

        disable = client.post("/v1/auth/mfa/disable", json={"code": codes[0]}, headers=headers)
        assert disable.status_code == 401

        disable = client.post(
            "/v1/auth/mfa/disable",
            json={"code": generate_totp(secret, time.time())},
            headers=headers,
        )
        assert disable.status_code == 200
        assert _login(client).json()["data"]["mfa_required"] is False

    def test_trusted_device_skips_challenge(self, client):
        data = _signup(client)
        secret, _ = self._enable_mfa(client, data["access_token"])
        login = _login(client).json()["data"]
        client.post(
            "/v1/auth/mfa/verify",
            json={
                "challenge_id": login["mfa_challenge_id"],
                "code": generate_totp(secret, time.time()),
                "trust_device": True,
            },
            headers=_bearer(login["access_token"]),
        )

        trusted = _login(client).json()["data"]
        assert trusted["mfa_required"] is False
        headers = _bearer(trusted["access_token"])
        devices = client.get("/v1/auth/mfa/devices", headers=headers).json()["data"]["devices"]
        assert len(devices) == 1

        removed = client.delete(f"/v1/auth/mfa/devices/{devices[0]['id']}", headers=headers)
        assert removed.status_code == 200
        assert _login(client).json()["data"]["mfa_required"] is True


class TestMagicLink:
    def test_magic_link_flow(self, client, outbox):
        _signup(client)
        response = client.post("/v1/auth/magic-link", json={"email": EMAIL})
        assert response.json()["data"]["message"] == "If an account exists, a magic link has been sent."
        token = _of_kind(outbox, "send_magic_link")[0]["args"][0]

        verify = client.post("/v1/auth/magic-link/verify", json={"token": token})
        assert verify.status_code == 200
        assert verify.json()["data"]["email_verified"] is True

        replay = client.post("/v1/auth/magic-link/verify", json={"token": token})
        assert replay.status_code == 401


class TestAdmin:
    def test_admin_endpoints_require_admin(self, client):
        data = _signup(client)
        response = client.get("/v1/admin/sessions/stats", headers=_bearer(data["access_token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_stats_and_cleanup(self, client):
        data = _signup(client)
        get_runtime().store.set_role(data["account_id"], "admin")
        admin = _login(client).json()["data"]
        headers = _bearer(admin["access_token"])

        stats = client.get("/v1/admin/sessions/stats", headers=headers)
        assert stats.status_code == 200
        assert stats.json()["data"]["active"] == 2

        cleanup = client.post("/v1/admin/maintenance/cleanup", headers=headers)
        assert cleanup.status_code == 200
        assert set(cleanup.json()["data"]) == {"sessions", "challenges", "trusted_devices"}
