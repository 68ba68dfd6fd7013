from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from academic_portal.logging import get_logger, hash_email
from academic_portal.service.auth import AuthContext
from academic_portal.service.credentials import CredentialVerifier, PasswordPolicy
from academic_portal.service.email import EmailService, NotificationDispatcher
from academic_portal.service.errors import (
    DuplicateEmailError,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from academic_portal.storage.common import AccountStore
from academic_portal.storage.errors import ConstraintViolation
from academic_portal.storage.models import (
    Account,
    RegistrationStatus,
    Role,
    StatusAudit,
    normalize_email,
)

logger = get_logger(__name__)

DEFAULT_REJECTION_REASON = "Registration requirements not met"
MAX_REASON_LENGTH = 500
MAX_BULK_APPROVAL = 200

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email_address(value: str) -> str:
    """Normalise an address and check its shape; raises ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


@dataclass
class BulkApprovalResult:
    succeeded: List[str] = field(default_factory=list)
    already_in_target_state: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "already_approved": self.already_in_target_state,
            "failed": self.failed,
        }


class RegistrationWorkflow:
    """The pending -> approved | rejected state machine.

    Transitions are compare-and-set operations in the store; notifications
    are dispatched only after the new state is committed and their failure
    never affects the transition.
    """

    def __init__(
        self,
        store: AccountStore,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        *,
        email: Optional[EmailService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.policy = policy
        self.email = email
        self.dispatcher = dispatcher or NotificationDispatcher()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _notify(self, kind: str, method: str, *args: Any) -> None:
        if self.email is None:
            return
        self.dispatcher.dispatch(kind, getattr(self.email, method), *args)

    @staticmethod
    def _require_admin(approver: AuthContext) -> None:
        if approver.role != Role.ADMIN.value:
            raise ForbiddenError("administrator role required")

    def _load(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    async def register(
        self,
        email: str,
        secret: str,
        role: Role | str,
        profile: Optional[Dict[str, Any]] = None,
    ) -> Account:
        try:
            normalized = validate_email_address(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from exc
        try:
            account_role = Role(role)
        except ValueError as exc:
            raise ValidationError(
                "role must be one of student, faculty, admin", detail={"field": "role"}
            ) from exc
        self.policy.enforce(secret)
        credential_hash = self.verifier.hash(secret)
        try:
            account = self.store.create_account(
                normalized, credential_hash, account_role, profile=profile
            )
        except ConstraintViolation as exc:
            logger.info("registration_duplicate_email", email_hash=hash_email(normalized))
            raise DuplicateEmailError() from exc
        logger.info(
            "account_registered", account_id=account.id, role=account.role.value
        )
        self._notify(
            "registration_received",
            "send_registration_received",
            account.email,
            account.role.value,
        )
        return account

    async def approve(self, account_id: str, approver: AuthContext) -> Account:
        self._require_admin(approver)
        account = self._load(account_id)
        if account.status != RegistrationStatus.PENDING:
            raise InvalidStateTransition(account.status.value)
        updated = self.store.transition_status(
            account_id,
            expected=RegistrationStatus.PENDING,
            new_status=RegistrationStatus.APPROVED,
            is_active=True,
            audit=StatusAudit(actor_id=approver.account_id),
            now=self._now(),
        )
        if updated is None:
            # lost a race with another administrator
            current = self._load(account_id)
            raise InvalidStateTransition(current.status.value)
        logger.info(
            "registration_approved", account_id=account_id, approved_by=approver.account_id
        )
        self._notify(
            "registration_approved",
            "send_registration_approved",
            updated.email,
            updated.role.value,
        )
        return updated

    async def reject(
        self, account_id: str, approver: AuthContext, reason: Optional[str]
    ) -> Account:
        self._require_admin(approver)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(
                "a rejection reason is required", detail={"field": "reason"}
            )
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"rejection reason must be at most {MAX_REASON_LENGTH} characters",
                detail={"field": "reason"},
            )
        account = self._load(account_id)
        if account.status != RegistrationStatus.PENDING:
            raise InvalidStateTransition(account.status.value)
        updated = self.store.transition_status(
            account_id,
            expected=RegistrationStatus.PENDING,
            new_status=RegistrationStatus.REJECTED,
            is_active=False,
            audit=StatusAudit(actor_id=approver.account_id, reason=reason),
            now=self._now(),
        )
        if updated is None:
            current = self._load(account_id)
            raise InvalidStateTransition(current.status.value)
        logger.info(
            "registration_rejected", account_id=account_id, rejected_by=approver.account_id
        )
        self._notify(
            "registration_rejected",
            "send_registration_rejected",
            updated.email,
            reason,
        )
        return updated

    async def bulk_approve(
        self, account_ids: Iterable[str], approver: AuthContext
    ) -> BulkApprovalResult:
        """Approve each id independently; one failure never aborts the batch."""
        self._require_admin(approver)
        unique_ids = list(dict.fromkeys(account_ids))
        if len(unique_ids) > MAX_BULK_APPROVAL:
            raise ValidationError(
                f"at most {MAX_BULK_APPROVAL} accounts per request",
                detail={"field": "account_ids"},
            )
        result = BulkApprovalResult()
        for account_id in unique_ids:
            try:
                await self.approve(account_id, approver)
            except InvalidStateTransition as exc:
                if exc.current_state == RegistrationStatus.APPROVED.value:
                    result.already_in_target_state.append(account_id)
                else:
                    result.failed.append(
                        {"account_id": account_id, "reason": exc.message}
                    )
            except NotFoundError as exc:
                result.failed.append({"account_id": account_id, "reason": exc.message})
            else:
                result.succeeded.append(account_id)
        logger.info(
            "registration_bulk_approved",
            approved_by=approver.account_id,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.already_in_target_state),
        )
        return result

    async def reactivate(
        self,
        account_id: str,
        approver: AuthContext,
        *,
        target: RegistrationStatus | str = RegistrationStatus.APPROVED,
    ) -> Account:
        """Administrative way out of a terminal state.

        A rejected account may be returned to pending (re-review) or straight
        to approved; an approved but deactivated account is re-enabled. The
        earlier approval/rejection audit fields are preserved.
        """
        self._require_admin(approver)
        try:
            target = RegistrationStatus(target)
        except ValueError as exc:
            raise ValidationError(
                "target must be pending or approved", detail={"field": "target"}
            ) from exc
        if target == RegistrationStatus.REJECTED:
            raise ValidationError(
                "target must be pending or approved", detail={"field": "target"}
            )
        account = self._load(account_id)
        audit = StatusAudit(actor_id=approver.account_id)
        now = self._now()
        if account.status == RegistrationStatus.REJECTED:
            updated = self.store.transition_status(
                account_id,
                expected=RegistrationStatus.REJECTED,
                new_status=target,
                is_active=target == RegistrationStatus.APPROVED,
                audit=audit,
                now=now,
                reactivation=True,
            )
        elif (
            account.status == RegistrationStatus.APPROVED
            and not account.is_active
            and target == RegistrationStatus.APPROVED
        ):
            updated = self.store.transition_status(
                account_id,
                expected=RegistrationStatus.APPROVED,
                new_status=RegistrationStatus.APPROVED,
                is_active=True,
                audit=audit,
                now=now,
                expected_active=False,
                reactivation=True,
            )
        else:
            raise InvalidStateTransition(
                account.status.value,
                message=f"account in state {account.status.value} cannot be reactivated",
            )
        if updated is None:
            current = self._load(account_id)
            raise InvalidStateTransition(current.status.value)
        logger.info(
            "account_reactivated",
            account_id=account_id,
            reactivated_by=approver.account_id,
            status=updated.status.value,
        )
        if updated.can_login:
            self._notify(
                "registration_approved",
                "send_registration_approved",
                updated.email,
                updated.role.value,
            )
        return updated

    async def deactivate(self, account_id: str, approver: AuthContext) -> Account:
        self._require_admin(approver)
        if account_id == approver.account_id:
            raise ValidationError(
                "administrators cannot deactivate their own account",
                detail={"field": "account_id"},
            )
        self._load(account_id)
        updated = self.store.set_active(account_id, False, now=self._now())
        if updated is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        logger.info(
            "account_deactivated", account_id=account_id, deactivated_by=approver.account_id
        )
        return updated

    async def registration_status(self, email: str) -> Dict[str, Any]:
        """Public status lookup for an applicant."""
        try:
            normalized = validate_email_address(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from exc
        account = self.store.get_account_by_email(normalized)
        if account is None:
            raise NotFoundError("no registration found for this email")
        data: Dict[str, Any] = {
            "email": account.email,
            "role": account.role.value,
            "registration_status": account.status.value,
            "can_login": account.can_login,
            "submitted_at": account.created_at,
        }
        if account.status == RegistrationStatus.APPROVED:
            data["approved_at"] = account.approved_at
        if account.status == RegistrationStatus.REJECTED:
            data["rejected_at"] = account.rejected_at
            data["rejection_reason"] = account.rejection_reason or DEFAULT_REJECTION_REASON
        return data

    async def list_registrations(
        self,
        approver: AuthContext,
        *,
        status: RegistrationStatus | str = RegistrationStatus.PENDING,
        role: Optional[Role | str] = None,
        limit: int = 100,
    ) -> List[Account]:
        self._require_admin(approver)
        return self.store.list_accounts(
            status=RegistrationStatus(status),
            role=Role(role) if role else None,
            limit=limit,
        )

    async def statistics(self, approver: AuthContext) -> Dict[str, Any]:
        self._require_admin(approver)
        counts = self.store.count_accounts_by_status()
        totals = {status: sum(by_role.values()) for status, by_role in counts.items()}
        return {
            "by_status": counts,
            "totals": totals,
            "total": sum(totals.values()),
        }
