import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be final before anything imports the settings or the app
_test_tmp_dir = tempfile.mkdtemp(prefix="deepref_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-memory throttles keep rate-limit state per test
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters; production defaults are exercised in test_tokens
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from deepref_auth.config import Settings  # noqa: E402
from deepref_auth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh persisted state per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
    )


class RecordingEmail:
    """Email sender double that keeps every message instead of sending it."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, to_email, **payload):
        self.sent.append({"kind": kind, "to": to_email, **payload})
        return not self.fail

    def send_password_reset(self, to_email, token, *, ttl_minutes=60):
        return self._record("password_reset", to_email, token=token, ttl_minutes=ttl_minutes)

    def send_security_alert(self, to_email, subject, message):
        return self._record("security_alert", to_email, subject=subject, message=message)

    def send_verification_code(self, to_email, code):
        return self._record("verification_code", to_email, code=code)

    def send_magic_link(self, to_email, token, *, ttl_minutes=15):
        return self._record("magic_link", to_email, token=token, ttl_minutes=ttl_minutes)

    def send_mfa_code(self, to_email, code):
        return self._record("mfa_code", to_email, code=code)

    def send_mfa_setup_confirmation(self, to_email):
        return self._record("mfa_setup_confirmation", to_email)

    def of_kind(self, kind):
        return [m for m in self.sent if m["kind"] == kind]


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def failing_email():
    return RecordingEmail(fail=True)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
