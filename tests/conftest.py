import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must be in place before authkernel modules read them
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authkernel.config import Settings, reset_settings_cache  # noqa: E402
from authkernel.service.runtime import Runtime  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Sup3rSecret"


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class RecordingNotifier:
    """Notifier that keeps every message instead of delivering it."""

    def __init__(self) -> None:
        self.codes = []
        self.statuses = []

    def send_code(self, identifier, code, purpose):
        self.codes.append((identifier, code, purpose))
        return True

    def send_account_status(self, account, event, reason=None):
        self.statuses.append((account.id, event, reason))
        return True

    def last_code(self, identifier=None):
        for sent_to, code, _ in reversed(self.codes):
            if identifier is None or sent_to == identifier:
                return code
        raise AssertionError(f"no code sent to {identifier}")


@pytest.fixture(autouse=True)
def _reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    """Settings with cheap argon2 parameters so hashing stays fast."""
    return Settings(
        use_memory_store=True,
        test_mode=True,
        jwt_access_secret="access-secret-for-tests-only-0123456789abcdef",
        jwt_refresh_secret="refresh-secret-for-tests-only-0123456789abcdef",
        password_time_cost=1,
        password_memory_cost_kib=8 * 1024,
        password_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, clock, notifier):
    return Runtime(settings, store=memory_store, clock=clock, notifier=notifier)


@pytest.fixture
def accounts(runtime):
    return runtime.accounts


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


@pytest.fixture
def active_customer(accounts, notifier):
    """Customer registered by email and activated with the emailed code."""
    account = accounts.register_customer(
        email="buyer@example.com", password=STRONG_PASSWORD, full_name="Buyer One"
    )
    accounts.verify_registration_otp("buyer@example.com", notifier.last_code())
    return accounts.get_account(account.id)


@pytest.fixture
def admin_account(accounts):
    return accounts.create_admin(
        email="admin@example.com", password=STRONG_PASSWORD, full_name="Admin"
    )
