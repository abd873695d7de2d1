import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the runtime before any import that might build it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("AUTH_ACCESS_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SECURITY_BCRYPT_COST", "10")
# Expiry must follow the injected clock, so the process-local cache is always used
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from heimdall.service.runtime import reset_runtime_for_tests  # noqa: E402

DEFAULT_PASSWORD = "Tidal-Lantern-42"


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def runtime(clock):
    return reset_runtime_for_tests(clock=clock)


@pytest.fixture
def make_user(runtime):
    """Insert a user straight into the store with a pre-hashed password."""

    def _make(username="alice", *, password=DEFAULT_PASSWORD, role="admin", status="active"):
        return runtime.store.create_user(
            username,
            f"{username}@example.com",
            runtime.passwords.hash(password),
            role=role,
            status=status,
        )

    return _make


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
