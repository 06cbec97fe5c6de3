import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("IDENTITY_BACKEND", "memory")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tollgate.service.email import EmailService  # noqa: E402
from tollgate.service.memory_provider import MemoryIdentityProvider  # noqa: E402
from tollgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tollgate.storage.memory import MemoryProfileStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def provider():
    return MemoryIdentityProvider("unit-test-secret-long-enough-for-hs256-signing")


@pytest.fixture
def profiles():
    return MemoryProfileStore()


@pytest.fixture
def notifier():
    # No SMTP host: messages land in ``notifier.outbox``
    return EmailService()


@pytest.fixture
def reported():
    """Collects exceptions handed to error tracking."""
    calls = []

    def _reporter(exc, **context):
        calls.append((exc, context))

    _reporter.calls = calls
    return _reporter


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
