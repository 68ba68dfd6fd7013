import importlib.util
from pathlib import Path

import pytest

from conftest import STRONG_PASSWORD

from academic_portal.service.errors import ValidationError
from academic_portal.storage.models import RegistrationStatus, Role

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def test_creates_active_admin(bootstrap, runtime):
    result = await bootstrap.bootstrap_admin("first-admin@uni.edu", STRONG_PASSWORD)
    assert result["status"] == "created"
    account = runtime.store.get_account(result["account_id"])
    assert account.role == Role.ADMIN
    assert account.can_login
    assert account.approved_by == bootstrap.BOOTSTRAP_ACTOR
    login = await runtime.auth.login("first-admin@uni.edu", STRONG_PASSWORD)
    assert login.account.id == account.id


async def test_rejects_weak_password(bootstrap, runtime):
    with pytest.raises(ValidationError):
        await bootstrap.bootstrap_admin("weak-admin@uni.edu", "admin")
    assert runtime.store.get_account_by_email("weak-admin@uni.edu") is None


async def test_promotes_pending_account(bootstrap, runtime):
    account = await runtime.registration.register(
        "promote@uni.edu", STRONG_PASSWORD, "faculty"
    )
    result = await bootstrap.bootstrap_admin("promote@uni.edu", STRONG_PASSWORD)
    assert result["status"] == "promoted"
    promoted = runtime.store.get_account(account.id)
    assert promoted.role == Role.ADMIN
    assert promoted.status == RegistrationStatus.APPROVED
    assert promoted.is_active is True


async def test_promotion_applies_supplied_password(bootstrap, runtime):
    account = await runtime.registration.register(
        "rotate@uni.edu", STRONG_PASSWORD, "faculty"
    )
    await bootstrap.bootstrap_admin("rotate@uni.edu", "N3w!AdminPassw0rd")
    login = await runtime.auth.login("rotate@uni.edu", "N3w!AdminPassw0rd")
    assert login.account.id == account.id


async def test_promotion_rejects_weak_password(bootstrap, runtime):
    account = await runtime.registration.register(
        "keep@uni.edu", STRONG_PASSWORD, "student"
    )
    with pytest.raises(ValidationError):
        await bootstrap.bootstrap_admin("keep@uni.edu", "admin")
    unchanged = runtime.store.get_account(account.id)
    assert unchanged.role == Role.STUDENT
    assert unchanged.status == RegistrationStatus.PENDING


async def test_is_idempotent(bootstrap):
    await bootstrap.bootstrap_admin("again@uni.edu", STRONG_PASSWORD)
    result = await bootstrap.bootstrap_admin("again@uni.edu", STRONG_PASSWORD)
    assert result["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap, runtime):
    result = await bootstrap.bootstrap_admin("dry@uni.edu", STRONG_PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert runtime.store.get_account_by_email("dry@uni.edu") is None
