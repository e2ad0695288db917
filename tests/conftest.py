import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="shopauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Redis off: revocation and config caching fall back to the store
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# cheap argon2 parameters keep hashing fast in tests
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("SECURITY_CONFIG_CACHE_SECONDS", "0")
os.environ.setdefault("API_CLIENT_IDS", "alexa,google-assistant")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from shopauth.config import Settings  # noqa: E402
from shopauth.service.auth import AuthOrchestrator  # noqa: E402
from shopauth.service.credentials import CredentialStore  # noqa: E402
from shopauth.service.email import EmailService  # noqa: E402
from shopauth.service.lockout import FailedAttemptTracker  # noqa: E402
from shopauth.service.mfa import MfaChallengeManager  # noqa: E402
from shopauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from shopauth.service.security_config import SecurityConfigProvider  # noqa: E402
from shopauth.service.sessions import SessionManager  # noqa: E402
from shopauth.storage.memory import MemoryStore  # noqa: E402

DEFAULT_PASSWORD = "CorrectHorse-42"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Settings for service-level tests, independent of the process env."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
        security_config_cache_seconds=0,
        api_client_ids=["alexa"],
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def stack(settings, memory_store):
    """The auth services wired over one memory store, as the runtime wires them."""
    config = SecurityConfigProvider(memory_store, settings)
    credentials = CredentialStore(settings)
    tracker = FailedAttemptTracker(memory_store, config)
    sessions = SessionManager(memory_store, config, settings)
    mfa = MfaChallengeManager(memory_store, config)
    email = EmailService()
    auth = AuthOrchestrator(
        memory_store,
        credentials=credentials,
        tracker=tracker,
        sessions=sessions,
        mfa=mfa,
        config=config,
        email=email,
    )
    return SimpleNamespace(
        store=memory_store,
        settings=settings,
        config=config,
        credentials=credentials,
        tracker=tracker,
        sessions=sessions,
        mfa=mfa,
        email=email,
        auth=auth,
    )


@pytest.fixture
def make_user(stack):
    """Factory for accounts that can sign in straight away."""

    def _make(
        email="shopper@example.com",
        password=DEFAULT_PASSWORD,
        *,
        role="customer",
        status="active",
        mfa_enabled=False,
    ):
        user = stack.store.create_user(
            email, stack.credentials.hash(password), role=role, status=status
        )
        if mfa_enabled:
            user = stack.store.set_user_mfa(user.id, True)
        return user

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
