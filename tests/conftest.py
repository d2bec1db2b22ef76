import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "Test-Secret-Key-For-Testing-Only-0123456789")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.storage.memory import MemorySessionStore  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET"]


class FakeClock:
    """Manually advanced wall clock shared by stores and services."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemorySessionStore:
    return MemorySessionStore(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(jwt_secret=TEST_SECRET, test_mode=True, password_hash_time_cost=1)


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
