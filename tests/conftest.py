import asyncio
import inspect
import os
import re
import sys
import time
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_TRANSPORT_SECRET", "transport-secret-for-tests")
# Empty REDIS_URL keeps every runtime on the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from passgate.app import create_app  # noqa: E402
from passgate.config import Settings, reset_settings_cache  # noqa: E402
from passgate.service.passwords import encrypt_transport_password  # noqa: E402
from passgate.service.runtime import Runtime  # noqa: E402
from passgate.storage.cache import MemoryCache  # noqa: E402
from passgate.storage.memory import MemoryStore  # noqa: E402

TRANSPORT_SECRET = "transport-secret-for-tests"
JWT_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class ManualClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingMailer:
    """Mail dispatcher that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent = []
        self.fail = False
        self.delay = 0.0

    def send(self, recipient, subject, text_body, html_body=None) -> bool:
        if self.delay:
            time.sleep(self.delay)
        self.sent.append((recipient, subject, text_body))
        return not self.fail

    def sent_to(self, recipient):
        return [message for message in self.sent if message[0] == recipient]

    def last_code(self, recipient) -> str:
        for to, _, text_body in reversed(self.sent):
            if to == recipient:
                return re.search(r"(\d{6})", text_body).group(1)
        raise AssertionError(f"no mail sent to {recipient}")


class Accounts:
    """Drives the credential flows the way a client would."""

    def __init__(self, runtime: Runtime, mailer: RecordingMailer) -> None:
        self.runtime = runtime
        self.mailer = mailer

    @staticmethod
    def blob(password: str) -> str:
        return encrypt_transport_password(password, TRANSPORT_SECRET)

    async def code_for(self, email: str, purpose: str) -> str:
        result = await self.runtime.codes.issue(email, purpose)
        assert result.ok, result
        return self.mailer.last_code(email)

    async def register(self, email: str = "alice@example.com", password: str = "Correct-Horse-1") -> str:
        code = await self.code_for(email, "register")
        result = await self.runtime.credentials.register(email, code, self.blob(password))
        assert result.ok, result
        return result.content["userId"]

    async def login(self, email: str = "alice@example.com", password: str = "Correct-Horse-1"):
        code = await self.code_for(email, "login")
        result = await self.runtime.credentials.login(email, code, self.blob(password))
        assert result.ok, result
        return result.issued


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_runtime(cache, mailer, clock):
    """Build a runtime over the shared clock with settings overrides."""

    def factory(store=None, **overrides):
        values = dict(
            test_mode=True,
            use_memory_store=True,
            redis_url=None,
            jwt_secret=JWT_SECRET,
            password_transport_secret=TRANSPORT_SECRET,
            cookie_secure=False,
        )
        values.update(overrides)
        return Runtime(
            Settings(**values),
            cache=cache,
            store=store if store is not None else MemoryStore(),
            mailer=mailer,
            clock=clock,
        )

    return factory


@pytest.fixture
def runtime(make_runtime, store):
    return make_runtime(store=store)


@pytest.fixture
def accounts(runtime, mailer):
    return Accounts(runtime, mailer)


@pytest.fixture
def app(runtime):
    return create_app(runtime)


@pytest.fixture
def client(app):
    return TestClient(app)


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
