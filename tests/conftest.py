import asyncio
import base64
import inspect
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("JWT_EMAIL_SECRET", "test-email-secret-do-not-use-in-production")
os.environ.setdefault("LLM_API_KEY", "test-llm-key")
# Cheap hashing keeps the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("OTP_HASH_TIME_COST", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from wowziri.config import Settings  # noqa: E402
from wowziri.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """Email transport double that keeps every message it is handed."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    def send(self, message):
        self.messages.append(message)
        return not self.fail


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def outbox():
    return RecordingTransport()


@pytest.fixture
def settings():
    """Test settings built explicitly, independent of the process environment."""
    return Settings(
        deployment_mode="test",
        jwt_access_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        jwt_email_secret="unit-email-secret",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        otp_hash_time_cost=1,
        llm_api_key="unit-llm-key",
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def latin1_token():
    """Well-formed header and claims with a signature byte outside ASCII.

    Starlette decodes headers and cookies as latin-1, so clients can send it.
    """
    return f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment({'sub': 'x'})}.abc\u00e9"


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
