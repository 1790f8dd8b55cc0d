import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")
# API tests log in many times from one client address
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionvault.storage.errors import (  # noqa: E402
    StoreCommandError,
    StoreUnavailableError,
)
from sessionvault.storage.memory import MemoryKeyValueStore  # noqa: E402


class FakeClock:
    """Manually advanced clock shared by the store (epoch floats) and managers (datetimes)."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class FlakyStore(MemoryKeyValueStore):
    """Memory store with switchable outages and per-command failure injection."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.down = False
        # (command name, key prefix) pairs that answer with a command error
        self.failing_commands: list[tuple[str, str]] = []
        # Simulates a store that silently drops TTLs on refresh records
        self.drop_refresh_ttl = False
        self.ignore_refresh_expire = False
        self.ensure_connected_calls = 0
        self.recover_on_ensure = False

    def fail(self, name: str, key_prefix: str = "") -> None:
        self.failing_commands.append((name, key_prefix))

    def _apply(self, name, *args):
        if self.down:
            raise StoreUnavailableError("simulated outage", operation=name)
        key = args[0] if args else ""
        for failing_name, prefix in self.failing_commands:
            if failing_name == name and key.startswith(prefix):
                raise StoreCommandError("simulated command failure", operation=name)
        return super()._apply(name, *args)

    def _cmd_set_with_ttl(self, key, value, seconds):
        result = super()._cmd_set_with_ttl(key, value, seconds)
        if self.drop_refresh_ttl and key.startswith("rt:"):
            self._data[key].expires_at = None
        return result

    def _cmd_expire(self, key, seconds):
        if self.ignore_refresh_expire and key.startswith("rt:"):
            return self._live_entry(key) is not None
        return super()._cmd_expire(key, seconds)

    async def scan_keys(self, pattern, *, limit=1000):
        if self.down:
            raise StoreUnavailableError("simulated outage", operation="scan")
        return await super().scan_keys(pattern, limit=limit)

    def is_available(self) -> bool:
        return not self.down

    async def ensure_connected(self) -> bool:
        self.ensure_connected_calls += 1
        if self.down and self.recover_on_ensure:
            self.down = False
        return not self.down


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FlakyStore(clock=clock.time)


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
