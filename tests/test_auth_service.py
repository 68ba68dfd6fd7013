"""Unit tests for login orchestration, token refresh and the auth gate.

Tests for:
- Login ordering (unknown email, lockout, credential check, lifecycle)
- Refresh re-checking account state
- Bearer token authentication and role checks
- Password change
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import STRONG_PASSWORD, create_approved_account

from academic_portal.service.auth import AuthContext
from academic_portal.service.credentials import CredentialVerifier
from academic_portal.service.errors import (
    AccountInactive,
    AccountLocked,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    RegistrationPending,
    RegistrationRejected,
    ValidationError,
)
from academic_portal.service.tokens import REFRESH
from academic_portal.storage.models import Role


@pytest.fixture
def auth(runtime):
    return runtime.auth


class TestLogin:
    async def test_successful_login_issues_tokens(self, auth, runtime):
        account = create_approved_account(runtime, "ok@uni.edu", Role.FACULTY)
        result = await auth.login("OK@uni.edu", STRONG_PASSWORD)
        assert result.account.id == account.id
        assert result.account.last_login_at is not None
        ctx = auth.authenticate(f"Bearer {result.tokens.access_token}")
        assert ctx.account_id == account.id
        assert ctx.role == "faculty"

    async def test_unknown_email_and_wrong_password_look_alike(self, auth, runtime):
        create_approved_account(runtime, "known@uni.edu")
        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("unknown@uni.edu", STRONG_PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login("known@uni.edu", "Wr0ng!Password")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.error_code == wrong.value.error_code == "unauthorized"

    async def test_pending_account_cannot_login(self, auth, runtime):
        await runtime.registration.register("pending@uni.edu", STRONG_PASSWORD, "student")
        with pytest.raises(RegistrationPending) as exc_info:
            await auth.login("pending@uni.edu", STRONG_PASSWORD)
        assert exc_info.value.error_code == "registration_pending"

    async def test_refused_login_does_not_record_last_login(self, auth, runtime):
        await runtime.registration.register("waiting@uni.edu", STRONG_PASSWORD, "student")
        with pytest.raises(RegistrationPending):
            await auth.login("waiting@uni.edu", STRONG_PASSWORD)
        assert runtime.store.get_account_by_email("waiting@uni.edu").last_login_at is None

    async def test_zero_width_characters_ignored_at_login(self, auth, runtime, admin_ctx):
        account = await runtime.registration.register(
            "zw@uni.edu", STRONG_PASSWORD, "student"
        )
        await runtime.registration.approve(account.id, admin_ctx)
        result = await auth.login("z\u200dw@uni.edu", STRONG_PASSWORD)
        assert result.account.id == account.id

    async def test_pending_account_with_wrong_password_is_invalid_credentials(
        self, auth, runtime
    ):
        await runtime.registration.register("quiet@uni.edu", STRONG_PASSWORD, "student")
        with pytest.raises(InvalidCredentials):
            await auth.login("quiet@uni.edu", "Wr0ng!Password")

    async def test_rejected_account_gets_reason(self, auth, runtime, admin_ctx):
        account = await runtime.registration.register(
            "rej@uni.edu", STRONG_PASSWORD, "faculty"
        )
        await runtime.registration.reject(account.id, admin_ctx, "not on staff list")
        with pytest.raises(RegistrationRejected) as exc_info:
            await auth.login("rej@uni.edu", STRONG_PASSWORD)
        assert exc_info.value.detail == {"rejection_reason": "not on staff list"}

    async def test_deactivated_account_cannot_login(self, auth, runtime, admin_ctx):
        account = create_approved_account(runtime, "off@uni.edu")
        await runtime.registration.deactivate(account.id, admin_ctx)
        with pytest.raises(AccountInactive):
            await auth.login("off@uni.edu", STRONG_PASSWORD)

    async def test_lockout_after_five_failures(self, auth, runtime):
        account = create_approved_account(runtime, "brute@uni.edu")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("brute@uni.edu", "Wr0ng!Password")
        # even the correct secret is refused while locked
        with pytest.raises(AccountLocked):
            await auth.login("brute@uni.edu", STRONG_PASSWORD)
        stored = runtime.store.get_account(account.id)
        assert stored.failed_attempt_count == 5

    async def test_login_after_lock_expires(self, auth, runtime):
        account = create_approved_account(runtime, "patient@uni.edu")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("patient@uni.edu", "Wr0ng!Password")
        later = datetime.now(timezone.utc) + timedelta(hours=2, minutes=1)
        runtime.lockout._now = lambda: later
        result = await auth.login("patient@uni.edu", STRONG_PASSWORD)
        assert result.account.id == account.id
        stored = runtime.store.get_account(account.id)
        assert stored.failed_attempt_count == 0
        assert stored.locked_until is None

    async def test_success_resets_failure_counter(self, auth, runtime):
        account = create_approved_account(runtime, "typo@uni.edu")
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await auth.login("typo@uni.edu", "Wr0ng!Password")
        await auth.login("typo@uni.edu", STRONG_PASSWORD)
        assert runtime.store.get_account(account.id).failed_attempt_count == 0

    async def test_login_rehashes_outdated_credential(self, auth, runtime):
        account = create_approved_account(runtime, "old@uni.edu")
        weak = CredentialVerifier(time_cost=1, memory_cost=512, parallelism=1)
        runtime.store.update_credential(
            account.id, weak.hash(STRONG_PASSWORD), now=datetime.now(timezone.utc)
        )
        await auth.login("old@uni.edu", STRONG_PASSWORD)
        stored = runtime.store.get_account(account.id)
        assert not runtime.verifier.needs_rehash(stored.credential_hash)
        assert runtime.verifier.verify(STRONG_PASSWORD, stored.credential_hash)


class TestRefresh:
    async def test_refresh_issues_new_access_token(self, auth, runtime):
        create_approved_account(runtime, "fresh@uni.edu")
        result = await auth.login("fresh@uni.edu", STRONG_PASSWORD)
        access, expires_at = await auth.refresh(result.tokens.refresh_token)
        assert access != result.tokens.access_token
        assert expires_at > datetime.now(timezone.utc)
        assert auth.authenticate(f"Bearer {access}").account_id == result.account.id

    async def test_access_token_cannot_refresh(self, auth, runtime):
        create_approved_account(runtime, "swap@uni.edu")
        result = await auth.login("swap@uni.edu", STRONG_PASSWORD)
        with pytest.raises(InvalidOrExpiredToken):
            await auth.refresh(result.tokens.access_token)

    async def test_refresh_rechecks_account_state(self, auth, runtime, admin_ctx):
        account = create_approved_account(runtime, "gone@uni.edu")
        result = await auth.login("gone@uni.edu", STRONG_PASSWORD)
        await runtime.registration.deactivate(account.id, admin_ctx)
        with pytest.raises(AccountInactive):
            await auth.refresh(result.tokens.refresh_token)

    async def test_refresh_for_deleted_account(self, auth, runtime):
        account = create_approved_account(runtime, "deleted@uni.edu")
        token = runtime.tokens.issue(account).refresh_token
        runtime.store.accounts.pop(account.id)
        with pytest.raises(InvalidOrExpiredToken):
            await auth.refresh(token)


class TestAuthenticate:
    def test_missing_header(self, auth):
        with pytest.raises(AuthenticationError) as exc_info:
            auth.authenticate(None)
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("header", ["", "Basic abc", "Bearer", "Bearer   "])
    def test_malformed_header(self, auth, header):
        with pytest.raises(AuthenticationError):
            auth.authenticate(header)

    def test_refresh_token_rejected_as_bearer(self, auth, runtime):
        account = create_approved_account(runtime, "bearer@uni.edu")
        refresh_token = runtime.tokens.issue(account).refresh_token
        with pytest.raises(InvalidOrExpiredToken):
            auth.authenticate(f"Bearer {refresh_token}")
        assert runtime.tokens.decode(refresh_token, REFRESH)["sub"] == account.id

    def test_role_requirement(self, auth, runtime):
        student = create_approved_account(runtime, "stu@uni.edu")
        admin = create_approved_account(runtime, "boss@uni.edu", Role.ADMIN)
        student_token, _ = runtime.tokens.issue_access(student)
        admin_token, _ = runtime.tokens.issue_access(admin)
        with pytest.raises(ForbiddenError):
            auth.authenticate(f"Bearer {student_token}", required_role="admin")
        ctx = auth.authenticate(f"bearer {admin_token}", required_role="admin")
        assert ctx.role == "admin"


class TestChangePassword:
    async def test_change_password(self, auth, runtime):
        account = create_approved_account(runtime, "change@uni.edu")
        ctx = AuthContext(account_id=account.id, role="student")
        await auth.change_password(ctx, STRONG_PASSWORD, "Br4nd!NewPass")
        result = await auth.login("change@uni.edu", "Br4nd!NewPass")
        assert result.account.id == account.id

    async def test_wrong_current_password(self, auth, runtime):
        account = create_approved_account(runtime, "wrongcur@uni.edu")
        ctx = AuthContext(account_id=account.id, role="student")
        with pytest.raises(ValidationError) as exc_info:
            await auth.change_password(ctx, "N0t!ThePassword", "Br4nd!NewPass")
        assert exc_info.value.detail["field"] == "current_password"

    async def test_new_password_must_meet_policy(self, auth, runtime):
        account = create_approved_account(runtime, "policy@uni.edu")
        ctx = AuthContext(account_id=account.id, role="student")
        with pytest.raises(ValidationError) as exc_info:
            await auth.change_password(ctx, STRONG_PASSWORD, "short")
        assert exc_info.value.detail["field"] == "new_password"


async def test_student_approval_and_lockout_walkthrough(runtime, admin_ctx):
    """alice waits for approval then logs in; bob locks himself out."""
    alice = await runtime.registration.register("alice@x.com", "Secret1!", "student")
    with pytest.raises(RegistrationPending):
        await runtime.auth.login("alice@x.com", "Secret1!")

    await runtime.registration.approve(alice.id, admin_ctx)
    result = await runtime.auth.login("alice@x.com", "Secret1!")
    assert result.tokens.access_token
    assert result.tokens.refresh_token
    assert result.account.role == Role.STUDENT
    access, _ = await runtime.auth.refresh(result.tokens.refresh_token)
    assert access != result.tokens.access_token

    create_approved_account(runtime, "bob@x.com", password="Secret1!")
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            await runtime.auth.login("bob@x.com", "Wrong1!pass")
    with pytest.raises(AccountLocked):
        await runtime.auth.login("bob@x.com", "Secret1!")
