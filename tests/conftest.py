import asyncio
import inspect
import os
import sys
import tempfile
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set test env before any imports that might initialize the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="learnquest_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "10000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from learnquest.config import Settings  # noqa: E402
from learnquest.service.accounts import AccountService  # noqa: E402
from learnquest.service.email_queue import EmailQueue  # noqa: E402
from learnquest.service.lockout import FailedLoginTracker  # noqa: E402
from learnquest.service.passwords import PasswordHasher  # noqa: E402
from learnquest.service.runtime import reset_runtime_for_tests  # noqa: E402
from learnquest.service.tokens import TokenIssuer  # noqa: E402
from learnquest.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable UTC clock shared by every service in a test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCookieJar:
    """CookieJar that records values and max ages in dicts."""

    def __init__(self, initial: dict | None = None):
        self.values: dict[str, str] = dict(initial or {})
        self.max_ages: dict[str, timedelta] = {}
        self.deleted: list[str] = []

    def get(self, name):
        return self.values.get(name)

    def set(self, name, value, max_age):
        self.values[name] = value
        self.max_ages[name] = max_age

    def delete(self, name):
        self.values.pop(name, None)
        self.deleted.append(name)


class RecordingTransport:
    """Email transport that records sends and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, str, str]] = []
        self.attempts = 0

    def send(self, to_email, subject, html_body, text_body=None):
        self.attempts += 1
        if self.fail:
            return False
        self.sent.append((to_email, subject, html_body, text_body))
        return True


class InlineExecutor(Executor):
    """Runs submitted callables immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_hash_iterations=10_000,
        use_memory_store=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def email_queue(transport, clock):
    return EmailQueue(transport, clock=clock)


@pytest.fixture
def hasher(settings):
    return PasswordHasher(settings.password_hash_iterations)


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def tracker(store, email_queue, clock, inline_executor):
    return FailedLoginTracker(store, email_queue, executor=inline_executor, clock=clock)


@pytest.fixture
def tokens(store, settings, clock):
    return TokenIssuer(store, settings, clock=clock)


@pytest.fixture
def accounts(store, hasher, tracker, email_queue, tokens, settings, clock):
    return AccountService(store, hasher, tracker, email_queue, tokens, settings, clock=clock)


@pytest.fixture
def cookies():
    return FakeCookieJar()


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
