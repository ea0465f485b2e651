import asyncio
import inspect
import os
import sys
from datetime import timedelta
from pathlib import Path

# Environment must be in place before authgate modules read it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-0123456789")
os.environ.setdefault("AUDIT_HASH_KEY", "test-audit-key-for-testing-only")
os.environ.setdefault("RECAPTCHA_ENABLED", "false")
os.environ.setdefault("PASSWORD_RESET_MIN_RESPONSE_MS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.service.audit import AuditTrail, ListSink  # noqa: E402
from authgate.service.credentials import CredentialHasher  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from authgate.storage.memory import MemoryStore  # noqa: E402
from authgate.storage.models import SecurityRecord, utcnow  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        session_secret="unit-test-session-secret-0123456789abcdef",
        audit_hash_key="unit-test-audit-key",
        password_reset_min_response_ms=0,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    """argon2id with minimal cost so tests stay fast."""
    return CredentialHasher(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def audit_sink():
    return ListSink()


@pytest.fixture
def audit(audit_sink):
    return AuditTrail("unit-test-audit-key", sink=audit_sink)


@pytest.fixture
def make_record(memory_store, hasher):
    """Create and store an account; keyword overrides land on the record."""

    async def _make(identity="user@example.com", password=STRONG_PASSWORD, **overrides):
        record = SecurityRecord.new(
            identity,
            hasher.hash(password),
            name=overrides.pop("name", ""),
            password_updated_at=overrides.pop("password_updated_at", utcnow() - timedelta(days=1)),
        )
        for key, value in overrides.items():
            setattr(record, key, value)
        return await memory_store.create_record(record)

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
