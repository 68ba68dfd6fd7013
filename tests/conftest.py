import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="academic_portal_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_COOKIE_SECURE", "false")
# cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from academic_portal.service.auth import AuthContext  # noqa: E402
from academic_portal.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from academic_portal.storage.models import RegistrationStatus, Role, StatusAudit  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


def create_approved_account(runtime, email, role=Role.STUDENT, password=STRONG_PASSWORD):
    """Insert an approved, active account straight into the store."""
    store = runtime.store
    account = store.create_account(email, runtime.verifier.hash(password), role)
    return store.transition_status(
        account.id,
        expected=RegistrationStatus.PENDING,
        new_status=RegistrationStatus.APPROVED,
        is_active=True,
        audit=StatusAudit(actor_id="fixture"),
        now=datetime.now(timezone.utc),
    )


@pytest.fixture
def admin_account(runtime):
    return create_approved_account(runtime, "admin@example.edu", Role.ADMIN)


@pytest.fixture
def admin_ctx(admin_account):
    return AuthContext(
        account_id=admin_account.id, role=Role.ADMIN.value, email=admin_account.email
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
