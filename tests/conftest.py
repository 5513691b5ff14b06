import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Minimal argon2 cost keeps the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings, reset_settings_cache  # noqa: E402
from authcore.service.credentials import CredentialStore  # noqa: E402
from authcore.service.permissions import seed_default_roles  # noqa: E402
from authcore.service.persistence import StoreGateway  # noqa: E402
from authcore.service.runtime import Runtime, set_runtime  # noqa: E402
from authcore.storage.common import SecretCipher  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STRONG_PASSWORD = "Tr0ub4dor&3x-Horse"


class ManualClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMailer:
    """Captures outbound mail instead of talking to SMTP."""

    def __init__(self, *, fail_alerts: bool = False) -> None:
        self.fail_alerts = fail_alerts
        self.alerts = []
        self.password_resets = []
        self.verifications = []

    async def send_security_alert(self, to_email, subject, text_body, html_body):
        if self.fail_alerts:
            raise ConnectionError("smtp unreachable")
        self.alerts.append({"to": to_email, "subject": subject, "text": text_body, "html": html_body})
        return True

    async def send_password_reset(self, to_email, token):
        self.password_resets.append((to_email, token))
        return True

    async def send_email_verification(self, to_email, token):
        self.verifications.append((to_email, token))
        return True


class RecordingSms:
    def __init__(self) -> None:
        self.sent = []

    async def send_sms(self, phone, message):
        self.sent.append((phone, message))
        return True


class RecordingMonitor:
    def __init__(self) -> None:
        self.events = []

    async def forward(self, event):
        self.events.append(event)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    set_runtime(None)
    reset_settings_cache()
    yield
    set_runtime(None)
    reset_settings_cache()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def store():
    memory = MemoryStore(cipher=SecretCipher(TEST_SECRET))
    seed_default_roles(memory)
    return memory


@pytest.fixture
def db(store):
    return StoreGateway(store, timeout=5.0)


@pytest.fixture
def credentials():
    return CredentialStore(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def failing_mailer():
    return RecordingMailer(fail_alerts=True)


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def monitor():
    return RecordingMonitor()


@pytest.fixture
def runtime(settings, clock, store, mailer, sms, monitor):
    rt = Runtime(
        settings,
        clock=clock,
        store=store,
        notifier=mailer,
        sms_sender=sms,
        monitor=monitor,
    )
    set_runtime(rt)
    return rt


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
