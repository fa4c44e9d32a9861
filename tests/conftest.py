import asyncio
import inspect
import os
import tempfile

# environment must be in place before any riskgate import builds settings
_test_tmp_dir = tempfile.mkdtemp(prefix="riskgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
# per-process buckets so rate limits never leak between tests through Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

from riskgate.service.runtime import reset_runtime_for_tests  # noqa: E402

from fixture_data import STRONG_PASSWORD  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def runtime(reset_runtime_state):
    from riskgate.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def make_user(runtime):
    """Insert a user straight into the store, bypassing registration."""
    from riskgate.storage.models import ROLE_ADMINISTRATOR, ROLE_USER, utcnow

    def _make(
        username="alice",
        password=STRONG_PASSWORD,
        *,
        active=True,
        verified=True,
        admin=False,
        full_name="Alice Example",
    ):
        roles = (ROLE_USER, ROLE_ADMINISTRATOR) if admin else (ROLE_USER,)
        return runtime.store.create_user(
            username,
            f"{username}@example.com",
            runtime.hasher.hash_sync(password),
            full_name=full_name,
            roles=roles,
            is_active=active,
            is_verified=verified,
            password_changed_at=utcnow(),
        )

    return _make
