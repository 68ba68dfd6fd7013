from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from academic_portal.logging import get_logger
from academic_portal.storage.common import audit_columns, empty_status_counts
from academic_portal.storage.errors import ConstraintViolation
from academic_portal.storage.models import (
    Account,
    RegistrationStatus,
    Role,
    StatusAudit,
    normalize_email,
)

_DATETIME_FIELDS = (
    "locked_until",
    "password_reset_expiry",
    "approved_at",
    "rejected_at",
    "reactivated_at",
    "last_login_at",
    "created_at",
    "updated_at",
)


class MemoryStore:
    """In-process account store used for development and tests.

    Every mutation runs inside ``_data_lock`` so compound updates (counter
    increment plus lock, compare-and-set transitions, reset consumption)
    are atomic with respect to concurrent requests. When ``fs_root`` is
    given the full state is snapshotted to JSON after each write.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    @staticmethod
    def _copy(account: Optional[Account]) -> Optional[Account]:
        # callers get snapshots so they cannot mutate stored records
        if account is None:
            return None
        return replace(account, profile=dict(account.profile))

    # accounts
    def create_account(
        self,
        email: str,
        credential_hash: str,
        role: Role | str,
        *,
        profile: Optional[Dict[str, Any]] = None,
        status: RegistrationStatus | str = RegistrationStatus.PENDING,
        is_active: bool = False,
    ) -> Account:
        if not credential_hash:
            raise ValueError("credential_hash must not be empty")
        account = Account.new(
            email,
            credential_hash,
            role,
            profile=profile,
            status=status,
            is_active=is_active,
        )
        with self._data_lock:
            if account.email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = account
            self._email_index[account.email] = account.id
            self._persist_state()
            return self._copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._copy(self.accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_email(email))
            return self._copy(self.accounts.get(account_id)) if account_id else None

    def list_accounts(
        self,
        *,
        status: Optional[RegistrationStatus] = None,
        role: Optional[Role] = None,
        limit: int = 100,
    ) -> List[Account]:
        with self._data_lock:
            results = [
                a
                for a in self.accounts.values()
                if (status is None or a.status == status)
                and (role is None or a.role == role)
            ]
            results.sort(key=lambda a: a.created_at, reverse=True)
            return [self._copy(a) for a in results[:limit]]

    def count_accounts_by_status(self) -> Dict[str, Dict[str, int]]:
        counts = empty_status_counts()
        with self._data_lock:
            for account in self.accounts.values():
                counts[account.status.value][account.role.value] += 1
        return counts

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
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.status != expected:
                return None
            if expected_active is not None and account.is_active != expected_active:
                return None
            account.status = new_status
            account.is_active = is_active
            for key, value in audit_columns(
                new_status, audit, now, reactivation=reactivation
            ).items():
                setattr(account, key, value)
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def set_active(
        self, account_id: str, is_active: bool, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.is_active = is_active
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def update_role(
        self, account_id: str, role: Role, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.role = Role(role)
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    # lockout
    def clear_expired_lock(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            if account.locked_until is not None and account.locked_until <= now:
                account.locked_until = None
                account.failed_attempt_count = 0
                account.updated_at = now
                self._persist_state()
            return self._copy(account)

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.failed_attempt_count += 1
            if account.failed_attempt_count >= threshold and not account.is_locked(now):
                account.locked_until = lock_until
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def record_successful_login(
        self, account_id: str, *, now: datetime, stamp_login: bool = True
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.failed_attempt_count = 0
            account.locked_until = None
            if stamp_login:
                account.last_login_at = now
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    # password reset
    def set_password_reset(
        self, account_id: str, secret_hash: str, expiry: datetime, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.password_reset_secret_hash = secret_hash
            account.password_reset_expiry = expiry
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def get_account_by_reset_hash(self, secret_hash: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.password_reset_secret_hash == secret_hash:
                    return self._copy(account)
            return None

    def consume_password_reset(
        self, secret_hash: str, new_credential_hash: str, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.password_reset_secret_hash == secret_hash
                ),
                None,
            )
            if account is None:
                return None
            if account.password_reset_expiry is None or account.password_reset_expiry <= now:
                return None
            account.credential_hash = new_credential_hash
            account.password_reset_secret_hash = None
            account.password_reset_expiry = None
            account.failed_attempt_count = 0
            account.locked_until = None
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def clear_password_reset(self, account_id: str, secret_hash: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            # a newer request may already have replaced the secret
            if account is None or account.password_reset_secret_hash != secret_hash:
                return
            account.password_reset_secret_hash = None
            account.password_reset_expiry = None
            self._persist_state()

    def update_credential(
        self, account_id: str, credential_hash: str, *, now: datetime
    ) -> Optional[Account]:
        if not credential_hash:
            raise ValueError("credential_hash must not be empty")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.credential_hash = credential_hash
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def verify_connection(self) -> bool:
        return True

    # persistence
    @staticmethod
    def _serialize_account(account: Account) -> dict:
        data = asdict(account)
        data["role"] = account.role.value
        data["status"] = account.status.value
        for key in _DATETIME_FIELDS:
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        data = dict(data)
        data["role"] = Role(data["role"])
        data["status"] = RegistrationStatus(data["status"])
        for key in _DATETIME_FIELDS:
            raw = data.get(key)
            data[key] = datetime.fromisoformat(raw) if raw else None
        return Account(**data)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()]
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
