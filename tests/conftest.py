import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("CLEANUP_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from staffauth.config import Settings  # noqa: E402
from staffauth.service.auth import AuthService, ensure_default_roles  # noqa: E402
from staffauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from staffauth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_issuer="staffauth-tests",
        jwt_audience="staffauth-test-clients",
        cleanup_enabled=False,
    )


@pytest.fixture
def memory_store():
    store = MemoryStore()
    ensure_default_roles(store)
    return store


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


@pytest.fixture
def employee_role(memory_store):
    return memory_store.get_role_by_name("Employee")


@pytest.fixture
def account(memory_store, auth_service, employee_role):
    """An active account whose password is ``CorrectHorse42!``."""
    return memory_store.create_account(
        "jdoe",
        "jdoe@example.com",
        auth_service.hash_password("CorrectHorse42!"),
        employee_role.id,
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
