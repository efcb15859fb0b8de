import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit runs; the runtime falls back to LocalCache under TEST_MODE
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")
os.environ.setdefault("QUOTA_ROUTE_LIMITS", "{}")
os.environ.setdefault("QUOTA_DEFAULT_LIMIT", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from feblr_sso.config import Settings  # noqa: E402
from feblr_sso.service.credentials import CredentialVerifier  # noqa: E402
from feblr_sso.service.runtime import reset_runtime_for_tests  # noqa: E402
from feblr_sso.storage.memory import MemoryStore  # noqa: E402
from feblr_sso.storage.models import Application  # noqa: E402

ACCOUNT_PASSWORD = "correct horse battery staple"
CLIENT_SECRET = "app1-client-secret"


class FakeClock:
    """Settable wall clock shared by caches (float seconds) and services (datetime)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        password_time_cost=1,
        password_memory_cost=8192,
        password_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore(second_factor_key="memory-store-test-key")


@pytest.fixture
def verifier(memory_store, settings):
    return CredentialVerifier(memory_store, settings)


def seed_directory(store, verifier) -> None:
    """Account a1 holds role reader -> {read}; application app1 allows {read, write}."""
    store.create_role("reader", ["read"])
    store.create_account("a1")
    store.set_password("a1", verifier.hash_secret(ACCOUNT_PASSWORD))
    store.assign_role("a1", "reader")
    store.create_application(
        Application(
            id="app1",
            name="Notes",
            secret_hash=verifier.hash_secret(CLIENT_SECRET),
            redirect_uri="https://notes.example.com/callback",
            allowed_scopes=frozenset({"read", "write"}),
        )
    )
    store.create_application(
        Application(
            id="app2",
            name="Calendar",
            secret_hash=verifier.hash_secret("app2-client-secret"),
            redirect_uri="https://calendar.example.com/callback",
            allowed_scopes=frozenset({"read"}),
        )
    )


@pytest.fixture
def seeded_store(memory_store, verifier):
    seed_directory(memory_store, verifier)
    return memory_store


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
