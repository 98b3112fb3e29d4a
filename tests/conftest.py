import asyncio
import inspect
import os
import sys
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

# Environment must be in place before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="taskguard_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps the runtime on the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskguard.config import Settings  # noqa: E402
from taskguard.service.accounts import AccountService  # noqa: E402
from taskguard.service.audit import StoreAuditSink  # noqa: E402
from taskguard.service.cipher import SecretCipher  # noqa: E402
from taskguard.service.login import LoginStateMachine  # noqa: E402
from taskguard.service.oauth import OAuthLinkService  # noqa: E402
from taskguard.service.passwords import PasswordManager  # noqa: E402
from taskguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from taskguard.service.sessions import SessionRegistry  # noqa: E402
from taskguard.service.tokens import TokenService  # noqa: E402
from taskguard.service.two_factor import TwoFactorService, generate_totp  # noqa: E402
from taskguard.storage.memory import MemoryStore  # noqa: E402
from taskguard.storage.models import Account  # noqa: E402
from taskguard.storage.redis_cache import InProcessCache  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
DEFAULT_PASSWORD = "CorrectHorse42"


class FakeClock:
    """Settable clock shared by the token signer, cache and services."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else float(int(time.time()))

    def time(self) -> float:
        return self.now

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmail:
    """Captures outgoing mail so tests can read one-time tokens."""

    is_configured = False

    def __init__(self):
        self.verifications = []
        self.resets = []
        self.alerts = []

    def send_verification(self, to_email, token):
        self.verifications.append((to_email, token))

    def send_password_reset(self, to_email, token):
        self.resets.append((to_email, token))

    def send_login_alert(self, to_email, **details):
        self.alerts.append((to_email, details))


@dataclass
class Harness:
    settings: Settings
    clock: FakeClock
    store: MemoryStore
    cache: InProcessCache
    cipher: SecretCipher
    passwords: PasswordManager
    tokens: TokenService
    email: RecordingEmail
    audit: StoreAuditSink
    sessions: SessionRegistry
    two_factor: TwoFactorService
    oauth: OAuthLinkService
    login: LoginStateMachine
    accounts: AccountService


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        max_failed_logins=5,
        lock_duration_minutes=30,
        two_factor_max_attempts=5,
        two_factor_lockout_seconds=300,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def passwords():
    # Cheap argon2id parameters keep the suite fast
    return PasswordManager(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def harness(settings, clock, passwords):
    store = MemoryStore()
    cache = InProcessCache(clock=clock.time)
    cipher = SecretCipher(settings.encryption_material())
    tokens = TokenService(settings, clock=clock.time)
    email = RecordingEmail()
    audit = StoreAuditSink(store, now=clock.utcnow)
    sessions = SessionRegistry(store, cache, settings, now=clock.utcnow)
    two_factor = TwoFactorService(
        store, cache, cipher, settings, passwords=passwords, clock=clock.time
    )
    oauth = OAuthLinkService(
        store, cache, settings, audit, providers={}, passwords=passwords, now=clock.utcnow
    )
    login = LoginStateMachine(
        store,
        cache,
        settings,
        tokens=tokens,
        two_factor=two_factor,
        sessions=sessions,
        oauth=oauth,
        audit=audit,
        email=email,
        passwords=passwords,
        now=clock.utcnow,
    )
    accounts = AccountService(
        store,
        cache,
        settings,
        email=email,
        sessions=sessions,
        passwords=passwords,
        now=clock.utcnow,
    )
    return Harness(
        settings=settings,
        clock=clock,
        store=store,
        cache=cache,
        cipher=cipher,
        passwords=passwords,
        tokens=tokens,
        email=email,
        audit=audit,
        sessions=sessions,
        two_factor=two_factor,
        oauth=oauth,
        login=login,
        accounts=accounts,
    )


@pytest.fixture
def make_account(harness):
    """Create a password account directly in the store."""

    def _make(
        email: str = "user@example.com",
        password: str | None = DEFAULT_PASSWORD,
        *,
        verified: bool = True,
    ) -> Account:
        account = Account.new(
            email,
            password_hash=harness.passwords.hash(password) if password else None,
            is_email_verified=verified,
            terms_accepted=True,
        )
        return harness.store.create_account(account)

    return _make


@pytest.fixture
def enable_two_factor(harness):
    """Enrol an account in TOTP; returns (secret, backup_codes)."""

    async def _enable(account_id: str):
        setup = await harness.two_factor.generate_setup_data(account_id)
        codes = await harness.two_factor.verify_and_enable(
            account_id, generate_totp(setup.secret, harness.clock.time())
        )
        return setup.secret, codes

    return _enable


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
