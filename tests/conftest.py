import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate windows are counted in the memory store so every test starts clean
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessera.config import Settings  # noqa: E402
from tessera.service.credentials import CredentialCodec  # noqa: E402
from tessera.service.passwords import SecretHasher  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.service.security_events import SecurityEventSink  # noqa: E402
from tessera.service.sessions import SessionService  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402


class FrozenClock:
    """Manually advanced UTC clock shared by the services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret="unit-test-secret-0123456789abcdef0123456789abcdef")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def events():
    return SecurityEventSink()


@pytest.fixture
def hasher():
    # Cheap parameters keep argon2 fast under test
    return SecretHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def codec(settings, clock):
    return CredentialCodec(settings, clock=clock)


@pytest.fixture
def sessions(store, codec, settings, events, clock):
    return SessionService(store, codec, settings, events, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com")


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
