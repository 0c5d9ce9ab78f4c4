import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from campusauth.config import Settings  # noqa: E402
from campusauth.service.auth import AuthService  # noqa: E402
from campusauth.service.codes import CodePurpose  # noqa: E402
from campusauth.storage.crypto import FieldCipher  # noqa: E402
from campusauth.storage.errors import StorageUnavailable  # noqa: E402
from campusauth.storage.memory import MemoryStore  # noqa: E402
from campusauth.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STRONG_PASSWORD = "CampusPass123"
CAMPUS = "campus-north"


class FrozenClock:
    """Manually advanced clock shared by the cache, store calls and services."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Captures outbound notices instead of sending them."""

    def __init__(self) -> None:
        self.codes: List[Tuple[str, str, CodePurpose, str]] = []
        self.lock_notices: List[Tuple[str, str, int]] = []
        self.password_changed: List[Tuple[str, str]] = []
        self.fail = False

    async def send_code(self, channel, address, purpose, code) -> bool:
        if self.fail:
            return False
        self.codes.append((channel, address, purpose, code))
        return True

    async def send_lock_notice(self, channel, address, minutes) -> bool:
        self.lock_notices.append((channel, address, minutes))
        return not self.fail

    async def send_password_changed(self, channel, address) -> bool:
        self.password_changed.append((channel, address))
        return not self.fail

    def last_code(self, purpose: Optional[CodePurpose] = None) -> str:
        for _, _, sent_purpose, code in reversed(self.codes):
            if purpose is None or sent_purpose == purpose:
                return code
        raise AssertionError("no code was sent")


class FailingCache(MemoryCache):
    """Memory cache whose selected operations raise ``StorageUnavailable``."""

    def __init__(self, clock, failing=()) -> None:
        super().__init__(clock)
        self.failing = set(failing)

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise StorageUnavailable("redis", operation, cause="connection refused")

    async def set(self, key, value, ttl_seconds=None):
        self._maybe_fail("set")
        return await super().set(key, value, ttl_seconds)

    async def exists(self, key):
        self._maybe_fail("exists")
        return await super().exists(key)

    async def keys_matching(self, pattern):
        self._maybe_fail("keys_matching")
        return await super().keys_matching(pattern)

    async def delete(self, *keys):
        self._maybe_fail("delete")
        return await super().delete(*keys)


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "test_mode": True,
        "use_memory_store": True,
        "access_token_ttl_minutes": 15,
        "refresh_token_ttl_minutes": 60 * 24,
        "default_campus_id": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock)


@pytest.fixture
def store(settings):
    return MemoryStore(FieldCipher(settings.encryption_key_material))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(store, cache, settings, notifier, clock):
    return AuthService(store, cache, settings, notifier=notifier, clock=clock)


@pytest.fixture
def student(auth_service):
    return auth_service.register_identity(
        "student@campus.example",
        STRONG_PASSWORD,
        name="Asha Student",
        phone="+919876543210",
        role="student",
        campus_id=CAMPUS,
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
