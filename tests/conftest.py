import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authwarden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# Empty REDIS_URL selects the per-process login throttle
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authwarden.config import Settings  # noqa: E402
from authwarden.service.auth import AuthEngine  # noqa: E402
from authwarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from authwarden.service.sessions import SessionRegistry  # noqa: E402
from authwarden.service.throttle import MemoryAttemptThrottle  # noqa: E402
from authwarden.service.tokens import TokenIssuer  # noqa: E402
from authwarden.storage.memory import MemoryStore  # noqa: E402

# Cheap parameters; production uses the argon2-cffi defaults
FAST_HASHER = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)

DEFAULT_PASSWORD = "CorrectHorse-Battery9"


class FakeClock:
    """Mutable UTC clock shared by the engine, throttle and token issuer."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures outbound notifications instead of delivering them."""

    def __init__(self, *, fail: bool = False, raise_error: bool = False):
        self.sent: list[tuple[str, str, str | None]] = []
        self.fail = fail
        self.raise_error = raise_error

    def _record(self, kind: str, to_email: str, token: str | None = None) -> bool:
        if self.raise_error:
            raise ConnectionError("smtp unreachable")
        self.sent.append((kind, to_email, token))
        return not self.fail

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._record("verification", to_email, token)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._record("reset", to_email, token)

    def send_password_changed(self, to_email: str) -> bool:
        return self._record("password_changed", to_email)

    def last(self, kind: str):
        matches = [entry for entry in self.sent if entry[0] == kind]
        return matches[-1] if matches else None

    def count(self, kind: str) -> int:
        return sum(1 for entry in self.sent if entry[0] == kind)


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret="unit-access-secret-0123456789abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdefghijklm",
        test_mode=True,
        use_memory_store=True,
        redis_url="",
    )
    values.update(overrides)
    return Settings(**values)


def build_engine(
    settings: Settings,
    clock: FakeClock,
    notifier: RecordingNotifier,
    store: MemoryStore | None = None,
) -> AuthEngine:
    store = store or MemoryStore()
    return AuthEngine(
        store,
        SessionRegistry(store, settings, clock=clock),
        MemoryAttemptThrottle(settings.login_throttle_window_seconds, clock=clock),
        TokenIssuer(settings, clock=clock),
        notifier,
        settings,
        clock=clock,
        password_hasher=FAST_HASHER,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(settings, clock, notifier):
    return build_engine(settings, clock, notifier)


@pytest.fixture
def register_user(engine, notifier):
    """Return a coroutine function that registers an account.

    ``verified=True`` also consumes the emailed verification token.
    """

    async def _register(
        email: str = "ada@example.com",
        username: str = "ada",
        password: str = DEFAULT_PASSWORD,
        *,
        verified: bool = True,
    ):
        result = await engine.register(
            email=email,
            password=password,
            username=username,
            first_name="Ada",
            last_name="Lovelace",
        )
        if verified:
            _, _, token = notifier.last("verification")
            await engine.verify_email(token)
        return result

    return _register


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
