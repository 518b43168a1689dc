import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pyotp  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authguard.config import Settings  # noqa: E402
from authguard.service.auth import AuthService  # noqa: E402
from authguard.service.devices import DeviceRegistry  # noqa: E402
from authguard.service.events import BestEffortNotifier, SecurityEventRecorder  # noqa: E402
from authguard.service.impersonation import ImpersonationManager  # noqa: E402
from authguard.service.lockout import AccountLockoutLedger  # noqa: E402
from authguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from authguard.service.throttle import LoginThrottlePolicy  # noqa: E402
from authguard.service.two_factor import TwoFactorChallengeService  # noqa: E402
from authguard.storage.directory import MemoryUserDirectory, TwoFactorCodeVerifier  # noqa: E402
from authguard.storage.memory import (  # noqa: E402
    MemoryCounterStore,
    MemoryLockoutStore,
    MemoryStore,
)

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
PASSWORD = "correct horse battery staple"


class FrozenClock:
    """Manually advanced clock injected wherever services read the time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingSink:
    """Audit sink that keeps every event in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def record(self, event_type, attributes):
        self.events.append((event_type, dict(attributes)))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]

    def of(self, event_type: str) -> list[dict]:
        return [attrs for kind, attrs in self.events if kind == event_type]


class FailingSink:
    def record(self, event_type, attributes):
        raise ConnectionError("audit backend down")


class RecordingDispatcher:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, user, template, context):
        self.sent.append((user.id, template, dict(context)))

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        app_secret_key=TEST_SECRET,
        test_mode=True,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def recorder(sink, clock):
    return SecurityEventRecorder(sink, clock=clock)


@pytest.fixture
def notifier(dispatcher):
    return BestEffortNotifier(dispatcher)


@pytest.fixture
def store(tmp_path, clock):
    return MemoryStore(fs_root=str(tmp_path / "state_root"), clock=clock)


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def lockout_store(clock):
    return MemoryLockoutStore(clock=clock)


@pytest.fixture
def directory(clock):
    return MemoryUserDirectory(TEST_SECRET, clock=clock)


@pytest.fixture
def code_verifier(directory, clock, settings):
    return TwoFactorCodeVerifier(
        directory, period_seconds=settings.two_factor_period_seconds, clock=clock
    )


@pytest.fixture
def ledger(lockout_store, settings, recorder, notifier, directory, clock):
    return AccountLockoutLedger(
        lockout_store,
        settings,
        recorder=recorder,
        notifier=notifier,
        directory=directory,
        clock=clock,
    )


@pytest.fixture
def throttle(counters, ledger, settings):
    return LoginThrottlePolicy(counters, ledger, settings)


@pytest.fixture
def two_factor(store, counters, code_verifier, directory, settings, recorder, notifier, clock):
    return TwoFactorChallengeService(
        store,
        counters,
        code_verifier,
        directory,
        settings,
        recorder=recorder,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def impersonation(store, directory, settings, recorder, clock):
    return ImpersonationManager(
        store,
        directory,
        settings,
        recorder=recorder,
        secret_key=TEST_SECRET,
        clock=clock,
    )


@pytest.fixture
def devices(store, settings, recorder, notifier, clock):
    return DeviceRegistry(store, settings, recorder=recorder, notifier=notifier, clock=clock)


@pytest.fixture
def auth_service(
    settings,
    store,
    directory,
    throttle,
    ledger,
    two_factor,
    impersonation,
    devices,
    recorder,
    notifier,
    clock,
):
    return AuthService(
        settings,
        store=store,
        directory=directory,
        credentials=directory,
        throttle=throttle,
        lockouts=ledger,
        two_factor=two_factor,
        impersonation=impersonation,
        devices=devices,
        recorder=recorder,
        notifier=notifier,
        clock=clock,
    )


def enable_totp(directory, user):
    """Give ``user`` confirmed 2FA; returns (secret, recovery_codes)."""
    secret = pyotp.random_base32()
    codes = directory.enable_two_factor(user.id, secret)
    return secret, codes


def totp_code(secret, clock, offset_periods: int = 0, period: int = 30) -> str:
    return pyotp.TOTP(secret, interval=period).at(clock(), offset_periods)


@pytest.fixture
def make_admin(directory):
    def _make(email="admin@example.com", *, with_2fa=True, role="admin"):
        user = directory.add_user(email, PASSWORD, role=role)
        if with_2fa:
            enable_totp(directory, user)
        return user

    return _make


@pytest.fixture
def make_user(directory):
    def _make(email="user@example.com", *, role="user", banned=False):
        return directory.add_user(email, PASSWORD, role=role, is_banned=banned)

    return _make
