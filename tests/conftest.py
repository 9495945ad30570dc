import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="cobaltauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blank REDIS_URL selects the in-process MemoryCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from cobaltauth.config import Settings, TokenConfig  # noqa: E402
from cobaltauth.service.auth import AuthService  # noqa: E402
from cobaltauth.service.email import EmailService  # noqa: E402
from cobaltauth.service.passwords import PasswordHasherService  # noqa: E402
from cobaltauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from cobaltauth.storage.memory import MemoryStore  # noqa: E402
from cobaltauth.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
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
def settings():
    return Settings(jwt_secret=TEST_SECRET)


@pytest.fixture
def token_config(settings):
    return TokenConfig.from_settings(settings)


@pytest.fixture
def fast_hasher():
    """Argon2id with minimal cost so suites stay quick."""
    return PasswordHasherService(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def email_service():
    return EmailService(base_url="http://testserver")


@pytest.fixture
def auth_service(memory_store, memory_cache, settings, fast_hasher, email_service):
    return AuthService(
        memory_store,
        memory_cache,
        settings,
        hasher=fast_hasher,
        email_service=email_service,
    )


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
