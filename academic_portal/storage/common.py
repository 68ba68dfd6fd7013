from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from academic_portal.storage.models import (
    Account,
    RegistrationStatus,
    Role,
    StatusAudit,
)


class AccountStore(Protocol):
    """Operations every identity store backend provides.

    Counter updates, status transitions and reset consumption are single
    atomic operations in each backend; services never read-modify-write.
    """

    def create_account(
        self,
        email: str,
        credential_hash: str,
        role: Role | str,
        *,
        profile: Optional[Dict[str, Any]] = None,
        status: RegistrationStatus | str = RegistrationStatus.PENDING,
        is_active: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        status: Optional[RegistrationStatus] = None,
        role: Optional[Role] = None,
        limit: int = 100,
    ) -> List[Account]: ...

    def count_accounts_by_status(self) -> Dict[str, Dict[str, int]]: ...

    def transition_status(
        self,
        account_id: str,
        *,
        expected: RegistrationStatus,
        new_status: RegistrationStatus,
        is_active: bool,
        audit: StatusAudit,
        now: datetime,
        expected_active: Optional[bool] = None,
        reactivation: bool = False,
    ) -> Optional[Account]: ...

    def set_active(
        self, account_id: str, is_active: bool, *, now: datetime
    ) -> Optional[Account]: ...

    def update_role(
        self, account_id: str, role: Role, *, now: datetime
    ) -> Optional[Account]: ...

    def clear_expired_lock(self, account_id: str, *, now: datetime) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[Account]: ...

    def record_successful_login(
        self, account_id: str, *, now: datetime, stamp_login: bool = True
    ) -> Optional[Account]: ...

    def set_password_reset(
        self, account_id: str, secret_hash: str, expiry: datetime, *, now: datetime
    ) -> Optional[Account]: ...

    def get_account_by_reset_hash(self, secret_hash: str) -> Optional[Account]: ...

    def consume_password_reset(
        self, secret_hash: str, new_credential_hash: str, *, now: datetime
    ) -> Optional[Account]: ...

    def clear_password_reset(self, account_id: str, secret_hash: str) -> None: ...

    def update_credential(
        self, account_id: str, credential_hash: str, *, now: datetime
    ) -> Optional[Account]: ...

    def verify_connection(self) -> bool: ...


def empty_status_counts() -> Dict[str, Dict[str, int]]:
    return {
        status.value: {role.value: 0 for role in Role}
        for status in RegistrationStatus
    }


def audit_columns(
    new_status: RegistrationStatus,
    audit: StatusAudit,
    now: datetime,
    *,
    reactivation: bool = False,
) -> Dict[str, Any]:
    """Audit fields written alongside a status transition."""
    if reactivation:
        return {"reactivated_by": audit.actor_id, "reactivated_at": now}
    if new_status == RegistrationStatus.APPROVED:
        return {"approved_by": audit.actor_id, "approved_at": now}
    if new_status == RegistrationStatus.REJECTED:
        return {
            "rejected_by": audit.actor_id,
            "rejected_at": now,
            "rejection_reason": audit.reason,
        }
    return {}


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict_row or mapping without raising on absence."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
