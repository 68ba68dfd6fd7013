"""Tests for the registration approval workflow."""

import pytest

from conftest import STRONG_PASSWORD, create_approved_account

from academic_portal.service.auth import AuthContext
from academic_portal.service.errors import (
    DuplicateEmailError,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from academic_portal.service.registration import (
    DEFAULT_REJECTION_REASON,
    validate_email_address,
)
from academic_portal.storage.models import RegistrationStatus, Role


class RecordingEmail:
    """Stands in for the SMTP service and records what would be sent."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def _record(self, kind, *args):
        self.sent.append((kind, args))
        if self.fail:
            raise RuntimeError("smtp down")
        return True

    def send_registration_received(self, email, role):
        return self._record("received", email, role)

    def send_registration_approved(self, email, role):
        return self._record("approved", email, role)

    def send_registration_rejected(self, email, reason):
        return self._record("rejected", email, reason)

    def send_password_reset(self, email, token):
        return self._record("reset", email, token)


@pytest.fixture
def workflow(runtime):
    return runtime.registration


@pytest.fixture
def recording_email(workflow):
    email = RecordingEmail()
    workflow.email = email
    return email


class TestEmailValidation:
    def test_normalizes_case_and_whitespace(self):
        assert validate_email_address("  Alice@Uni.EDU ") == "alice@uni.edu"

    def test_strips_zero_width_characters(self):
        assert validate_email_address("al\u200bice@uni.edu") == "alice@uni.edu"

    @pytest.mark.parametrize(
        "value",
        ["", "no-at-sign", "@uni.edu", "alice@", "alice@localhost", "al ice@uni.edu", "a@-bad-.edu"],
    )
    def test_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            validate_email_address(value)


class TestRegister:
    async def test_register_creates_pending_inactive_account(self, workflow, runtime):
        account = await workflow.register(
            "Alice@Uni.edu", STRONG_PASSWORD, "student", {"student_number": "S-100"}
        )
        assert account.email == "alice@uni.edu"
        assert account.status == RegistrationStatus.PENDING
        assert account.is_active is False
        assert account.profile == {"student_number": "S-100"}
        stored = runtime.store.get_account(account.id)
        assert stored.credential_hash != STRONG_PASSWORD
        assert runtime.verifier.verify(STRONG_PASSWORD, stored.credential_hash)

    async def test_duplicate_email_conflicts(self, workflow):
        await workflow.register("dup@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        with pytest.raises(DuplicateEmailError) as exc_info:
            await workflow.register("DUP@uni.edu", STRONG_PASSWORD, Role.FACULTY)
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "conflict"

    async def test_weak_password_rejected_before_storing(self, workflow, runtime):
        with pytest.raises(ValidationError) as exc_info:
            await workflow.register("weak@uni.edu", "password", Role.STUDENT)
        assert exc_info.value.detail["field"] == "password"
        assert runtime.store.get_account_by_email("weak@uni.edu") is None

    async def test_invalid_role_rejected(self, workflow):
        with pytest.raises(ValidationError) as exc_info:
            await workflow.register("role@uni.edu", STRONG_PASSWORD, "dean")
        assert exc_info.value.detail == {"field": "role"}

    async def test_invalid_email_rejected(self, workflow):
        with pytest.raises(ValidationError):
            await workflow.register("not-an-email", STRONG_PASSWORD, Role.STUDENT)

    async def test_registration_notification_sent(self, workflow, recording_email):
        await workflow.register("notify@uni.edu", STRONG_PASSWORD, Role.FACULTY)
        await workflow.dispatcher.drain()
        assert recording_email.sent == [("received", ("notify@uni.edu", "faculty"))]


class TestApproveReject:
    async def test_approve_activates_and_audits(self, workflow, admin_ctx):
        account = await workflow.register("bob@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        approved = await workflow.approve(account.id, admin_ctx)
        assert approved.status == RegistrationStatus.APPROVED
        assert approved.is_active is True
        assert approved.can_login
        assert approved.approved_by == admin_ctx.account_id
        assert approved.approved_at is not None

    async def test_approve_twice_reports_current_state(self, workflow, admin_ctx):
        account = await workflow.register("twice@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        await workflow.approve(account.id, admin_ctx)
        with pytest.raises(InvalidStateTransition) as exc_info:
            await workflow.approve(account.id, admin_ctx)
        assert exc_info.value.current_state == "approved"
        assert exc_info.value.detail == {"current_state": "approved"}

    async def test_reject_records_reason_and_blocks_approval(self, workflow, admin_ctx):
        account = await workflow.register("carol@uni.edu", STRONG_PASSWORD, Role.FACULTY)
        rejected = await workflow.reject(account.id, admin_ctx, "  no faculty record  ")
        assert rejected.status == RegistrationStatus.REJECTED
        assert rejected.is_active is False
        assert rejected.rejection_reason == "no faculty record"
        with pytest.raises(InvalidStateTransition):
            await workflow.approve(account.id, admin_ctx)

    async def test_reject_requires_reason(self, workflow, admin_ctx):
        account = await workflow.register("noreason@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        with pytest.raises(ValidationError):
            await workflow.reject(account.id, admin_ctx, "   ")
        with pytest.raises(ValidationError):
            await workflow.reject(account.id, admin_ctx, "x" * 501)

    async def test_non_admin_cannot_approve(self, workflow):
        account = await workflow.register("self@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        faculty = AuthContext(account_id="fac-1", role="faculty")
        with pytest.raises(ForbiddenError):
            await workflow.approve(account.id, faculty)

    async def test_unknown_account(self, workflow, admin_ctx):
        with pytest.raises(NotFoundError):
            await workflow.approve("missing-id", admin_ctx)

    async def test_notification_failure_does_not_undo_approval(
        self, workflow, admin_ctx, runtime
    ):
        account = await workflow.register("flaky@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        workflow.email = RecordingEmail(fail=True)
        approved = await workflow.approve(account.id, admin_ctx)
        await workflow.dispatcher.drain()
        assert approved.status == RegistrationStatus.APPROVED
        assert runtime.store.get_account(account.id).can_login
        assert workflow.email.sent[0][0] == "approved"


class TestBulkApprove:
    async def test_bulk_approve_reports_each_outcome(self, workflow, admin_ctx):
        pending = await workflow.register("p1@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        approved = await workflow.register("p2@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        rejected = await workflow.register("p3@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        await workflow.approve(approved.id, admin_ctx)
        await workflow.reject(rejected.id, admin_ctx, "duplicate application")

        result = await workflow.bulk_approve(
            [pending.id, approved.id, rejected.id, "missing-id", pending.id], admin_ctx
        )
        assert result.succeeded == [pending.id]
        assert result.already_in_target_state == [approved.id]
        assert {f["account_id"] for f in result.failed} == {rejected.id, "missing-id"}
        assert result.as_dict()["already_approved"] == [approved.id]

    async def test_bulk_approve_limit(self, workflow, admin_ctx):
        with pytest.raises(ValidationError):
            await workflow.bulk_approve([f"id-{i}" for i in range(201)], admin_ctx)


class TestReactivateDeactivate:
    async def test_reactivate_rejected_to_approved(self, workflow, admin_ctx):
        account = await workflow.register("again@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        await workflow.reject(account.id, admin_ctx, "missing transcript")
        reactivated = await workflow.reactivate(account.id, admin_ctx)
        assert reactivated.status == RegistrationStatus.APPROVED
        assert reactivated.is_active is True
        assert reactivated.reactivated_by == admin_ctx.account_id
        assert reactivated.rejection_reason == "missing transcript"

    async def test_reactivate_rejected_back_to_pending(self, workflow, admin_ctx):
        account = await workflow.register("review@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        await workflow.reject(account.id, admin_ctx, "unclear")
        reactivated = await workflow.reactivate(account.id, admin_ctx, target="pending")
        assert reactivated.status == RegistrationStatus.PENDING
        assert reactivated.is_active is False
        approved = await workflow.approve(account.id, admin_ctx)
        assert approved.can_login

    async def test_reactivate_pending_is_invalid(self, workflow, admin_ctx):
        account = await workflow.register("pend@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        with pytest.raises(InvalidStateTransition):
            await workflow.reactivate(account.id, admin_ctx)

    async def test_deactivate_then_reactivate(self, workflow, admin_ctx, runtime):
        account = create_approved_account(runtime, "dee@uni.edu")
        deactivated = await workflow.deactivate(account.id, admin_ctx)
        assert deactivated.is_active is False
        assert deactivated.status == RegistrationStatus.APPROVED
        restored = await workflow.reactivate(account.id, admin_ctx)
        assert restored.can_login

    async def test_admin_cannot_deactivate_self(self, workflow, admin_ctx):
        with pytest.raises(ValidationError):
            await workflow.deactivate(admin_ctx.account_id, admin_ctx)


class TestQueries:
    async def test_registration_status_for_rejected(self, workflow, admin_ctx):
        account = await workflow.register("dave@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        await workflow.reject(account.id, admin_ctx, "not enrolled")
        status = await workflow.registration_status("DAVE@uni.edu")
        assert status["registration_status"] == "rejected"
        assert status["rejection_reason"] == "not enrolled"
        assert status["can_login"] is False

    async def test_registration_status_default_reason(self, workflow, runtime, admin_ctx):
        account = await workflow.register("erin@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        await workflow.reject(account.id, admin_ctx, "temporary")
        runtime.store.accounts[account.id].rejection_reason = None
        status = await workflow.registration_status("erin@uni.edu")
        assert status["rejection_reason"] == DEFAULT_REJECTION_REASON

    async def test_registration_status_unknown_email(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.registration_status("nobody@uni.edu")

    async def test_list_and_statistics(self, workflow, admin_ctx):
        await workflow.register("s1@uni.edu", STRONG_PASSWORD, Role.STUDENT)
        faculty = await workflow.register("f1@uni.edu", STRONG_PASSWORD, Role.FACULTY)
        await workflow.approve(faculty.id, admin_ctx)

        pending = await workflow.list_registrations(admin_ctx)
        assert [a.email for a in pending] == ["s1@uni.edu"]
        approved_faculty = await workflow.list_registrations(
            admin_ctx, status="approved", role="faculty"
        )
        assert [a.email for a in approved_faculty] == ["f1@uni.edu"]

        stats = await workflow.statistics(admin_ctx)
        assert stats["totals"]["pending"] == 1
        # the fixture admin is approved too
        assert stats["totals"]["approved"] == 2
        assert stats["by_status"]["approved"]["faculty"] == 1
        assert stats["total"] == 3

    async def test_queries_require_admin(self, workflow):
        student = AuthContext(account_id="stu-1", role="student")
        with pytest.raises(ForbiddenError):
            await workflow.list_registrations(student)
        with pytest.raises(ForbiddenError):
            await workflow.statistics(student)
