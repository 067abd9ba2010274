import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Configure the environment before anything imports the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blank REDIS_URL keeps rate limits in the per-process fallback bucket
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Integration suites register more accounts per test than the default allows
os.environ.setdefault("SIGNUP_RATE_LIMIT", "100")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from shelfkeeper.config import Settings  # noqa: E402
from shelfkeeper.service.passwords import PasswordHasher  # noqa: E402
from shelfkeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from shelfkeeper.service.tokens import TokenCodec  # noqa: E402
from shelfkeeper.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class RecordingNotifier:
    """Captures outgoing mail instead of sending it."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.verification: list[tuple[str, str]] = []
        self.reset: list[tuple[str, str]] = []
        self.changed: list[str] = []

    def send_verification_email(self, user, token):
        self.verification.append((user.email, token))
        return not self.fail

    def send_password_reset_email(self, user, token):
        self.reset.append((user.email, token))
        return not self.fail

    def send_password_change_notification(self, user):
        self.changed.append(user.email)
        return not self.fail


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fast_hasher():
    # Minimum argon2 costs keep the suite quick
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def codec(settings):
    return TokenCodec(
        settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


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
