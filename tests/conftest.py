import asyncio
import inspect
import os
import sys
from pathlib import Path

# Test environment must be in place before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-testing-only-do-not-use")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
# TestClient talks plain http, so Secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("APP_BASE_URL", "http://testserver")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from communityhub.config import SecurityConfig  # noqa: E402
from communityhub.service.runtime import reset_runtime_for_tests  # noqa: E402
from communityhub.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def security_config():
    return SecurityConfig(
        signing_key=b"unit-test-signing-key-0123456789",
        cookie_secure=False,
        app_base_url="http://testserver",
    )


@pytest.fixture
def memory_store():
    return MemoryStore(two_factor_encryption_key="unit-test-encryption-key")


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


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
