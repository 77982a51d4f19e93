import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="autohealer_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limit buckets; tests never need a Redis server
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from autohealer.config import Settings  # noqa: E402
from autohealer.service.audit import AuditSink  # noqa: E402
from autohealer.service.auth import AuthOrchestrator  # noqa: E402
from autohealer.service.email import EmailService  # noqa: E402
from autohealer.service.emergency import EmergencyOverrideController  # noqa: E402
from autohealer.service.lockout import AccountLockoutGuard  # noqa: E402
from autohealer.service.mfa import MfaEngine  # noqa: E402
from autohealer.service.passwords import CredentialVerifier  # noqa: E402
from autohealer.service.runtime import reset_runtime_for_tests  # noqa: E402
from autohealer.service.secrets import SecretStore  # noqa: E402
from autohealer.service.sessions import SessionManager  # noqa: E402
from autohealer.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Sup3r$ecretPass"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Settings for unit tests, independent of the process environment."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def secret_store(settings):
    return SecretStore(settings.encryption_key_material)


@pytest.fixture
def audit(memory_store):
    return AuditSink(memory_store)


@pytest.fixture
def credentials(memory_store, settings, secret_store, audit):
    return CredentialVerifier(memory_store, settings, secret_store, audit)


@pytest.fixture
def mfa(memory_store, settings, secret_store, audit):
    return MfaEngine(memory_store, settings, secret_store, audit)


@pytest.fixture
def lockout(memory_store, settings, audit):
    return AccountLockoutGuard(memory_store, settings, audit)


@pytest.fixture
def sessions(memory_store, settings, secret_store, audit):
    return SessionManager(memory_store, settings, secret_store, audit)


@pytest.fixture
def emergency(memory_store, settings):
    return EmergencyOverrideController(memory_store, settings)


class RecordingEmailService(EmailService):
    """Captures outgoing mail instead of talking to SMTP."""

    def __init__(self) -> None:
        super().__init__()
        self.sent = []

    def _send_email(self, to_email, subject, html_body, text_body=None):
        self.sent.append((to_email, subject))
        return True

    def subjects_for(self, to_email):
        return [subject for recipient, subject in self.sent if recipient == to_email]


@pytest.fixture
def email_outbox():
    return RecordingEmailService()


@pytest.fixture
def orchestrator(
    memory_store, settings, credentials, mfa, lockout, sessions, emergency, audit, email_outbox
):
    return AuthOrchestrator(
        memory_store,
        settings,
        credentials=credentials,
        mfa=mfa,
        lockout=lockout,
        sessions=sessions,
        emergency=emergency,
        audit=audit,
        email=email_outbox,
    )


@pytest.fixture
def enable_mfa(mfa):
    """Run the setup state machine for a user; returns the raw secret and codes."""

    def _enable(user):
        setup = mfa.begin_setup(user.id)
        mfa.confirm_setup(user.id, mfa.generate_totp(setup.secret))
        return setup

    return _enable


@pytest.fixture
def make_user(memory_store, credentials):
    """Factory creating users with a known password."""

    def _make(
        email: str = "operator@example.com",
        *,
        username: str | None = None,
        password: str = STRONG_PASSWORD,
        role: str = "viewer",
        is_active: bool = True,
    ):
        return memory_store.create_user(
            email,
            username or email.split("@", 1)[0],
            credentials.hash_password(password),
            role=role,
            is_active=is_active,
        )

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
