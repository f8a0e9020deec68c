import asyncio
import inspect
import os
import tempfile

# Environment must be in place before anything builds settings or the runtime
_test_state_dir = tempfile.mkdtemp(prefix="idportal_test_")
os.environ.setdefault("STATE_DIR", _test_state_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_BACKEND", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL selects the in-memory marker cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("TOKEN_SECRET", "test-token-secret-for-automation-only-0123456789")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-automation-only-0123456789")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from idportal import app as app_module  # noqa: E402
from idportal.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced clock shared by services and caches under test."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def make_client():
    """Build test clients that hold a CSRF cookie and echo it in a header."""

    def _make(**kwargs) -> TestClient:
        kwargs.setdefault("follow_redirects", False)
        client = TestClient(app_module.app, **kwargs)
        token = client.get("/auth/csrf").json()["data"]["csrf_token"]
        client.headers["X-CSRF-Token"] = token
        return client

    return _make


@pytest.fixture
def client(make_client):
    """Test client that does not follow redirects."""
    return make_client()


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
