from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from academic_portal.logging import get_logger
from academic_portal.storage.common import (
    audit_columns,
    empty_status_counts,
    safe_row_value,
)
from academic_portal.storage.errors import ConstraintViolation, StoreUnavailable
from academic_portal.storage.models import (
    Account,
    RegistrationStatus,
    Role,
    StatusAudit,
    normalize_email,
)

_ACCOUNT_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    credential_hash TEXT NOT NULL CHECK (credential_hash <> ''),
    role TEXT NOT NULL CHECK (role IN ('student', 'faculty', 'admin')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'approved', 'rejected')),
    is_active BOOLEAN NOT NULL DEFAULT FALSE,
    failed_attempt_count INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempt_count >= 0),
    locked_until TIMESTAMPTZ,
    password_reset_secret_hash TEXT,
    password_reset_expiry TIMESTAMPTZ,
    approved_by TEXT,
    approved_at TIMESTAMPTZ,
    rejected_by TEXT,
    rejected_at TIMESTAMPTZ,
    rejection_reason TEXT,
    reactivated_by TEXT,
    reactivated_at TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    profile JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_ACCOUNT_INDEX_DDL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    "CREATE INDEX IF NOT EXISTS account_status_idx ON account (status, created_at DESC)",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_reset_hash_idx ON account "
    "(password_reset_secret_hash) WHERE password_reset_secret_hash IS NOT NULL",
)


class PostgresStore:
    """Postgres-backed identity store.

    Compound updates are expressed as single ``UPDATE ... RETURNING``
    statements so concurrent requests cannot lose increments or double-apply
    a transition.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("account_store_pool_timeout", error=str(exc))
            raise StoreUnavailable() from exc
        except psycopg.OperationalError as exc:
            self.logger.error("account_store_unavailable", error=str(exc))
            raise StoreUnavailable() from exc

    def _ensure_schema(self) -> None:
        """Create the ``account`` table and its indexes if missing."""

        with self._connect() as conn:
            conn.execute(_ACCOUNT_TABLE_DDL)
            for statement in _ACCOUNT_INDEX_DDL:
                conn.execute(statement)

    @staticmethod
    def _account_from_row(row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        profile = safe_row_value(row, "profile", {})
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            credential_hash=row["credential_hash"],
            role=Role(row["role"]),
            status=RegistrationStatus(row["status"]),
            is_active=bool(row["is_active"]),
            failed_attempt_count=int(safe_row_value(row, "failed_attempt_count", 0)),
            locked_until=row.get("locked_until"),
            password_reset_secret_hash=row.get("password_reset_secret_hash"),
            password_reset_expiry=row.get("password_reset_expiry"),
            approved_by=row.get("approved_by"),
            approved_at=row.get("approved_at"),
            rejected_by=row.get("rejected_by"),
            rejected_at=row.get("rejected_at"),
            rejection_reason=row.get("rejection_reason"),
            reactivated_by=row.get("reactivated_by"),
            reactivated_at=row.get("reactivated_at"),
            last_login_at=row.get("last_login_at"),
            profile=dict(profile or {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._account_from_row(row)

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
        try:
            account = self._fetch_one(
                """
                INSERT INTO account (id, email, credential_hash, role, status, is_active, profile)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    normalize_email(email),
                    credential_hash,
                    Role(role).value,
                    RegistrationStatus(status).value,
                    is_active,
                    json.dumps(profile or {}),
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_one("SELECT * FROM account WHERE id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE lower(email) = %s", (normalize_email(email),)
        )

    def list_accounts(
        self,
        *,
        status: Optional[RegistrationStatus] = None,
        role: Optional[Role] = None,
        limit: int = 100,
    ) -> List[Account]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(RegistrationStatus(status).value)
        if role is not None:
            clauses.append("role = %s")
            params.append(Role(role).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM account {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def count_accounts_by_status(self) -> Dict[str, Dict[str, int]]:
        counts = empty_status_counts()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, role, count(*) AS total FROM account GROUP BY status, role"
            ).fetchall()
        for row in rows:
            counts.setdefault(row["status"], {})[row["role"]] = int(row["total"])
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
        columns = audit_columns(new_status, audit, now, reactivation=reactivation)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params: list[Any] = [RegistrationStatus(new_status).value, is_active]
        params.extend(columns.values())
        params.extend([now, account_id, RegistrationStatus(expected).value])
        active_clause = ""
        if expected_active is not None:
            active_clause = " AND is_active = %s"
            params.append(expected_active)
        extra = f", {assignments}" if assignments else ""
        return self._fetch_one(
            f"""
            UPDATE account
               SET status = %s, is_active = %s{extra}, updated_at = %s
             WHERE id = %s AND status = %s{active_clause}
            RETURNING *
            """,
            tuple(params),
        )

    def set_active(
        self, account_id: str, is_active: bool, *, now: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            "UPDATE account SET is_active = %s, updated_at = %s WHERE id = %s RETURNING *",
            (is_active, now, account_id),
        )

    def update_role(
        self, account_id: str, role: Role, *, now: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            "UPDATE account SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
            (Role(role).value, now, account_id),
        )

    # lockout
    def clear_expired_lock(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                   SET locked_until = NULL, failed_attempt_count = 0, updated_at = %s
                 WHERE id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                RETURNING *
                """,
                (now, account_id, now),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s", (account_id,)
                ).fetchone()
        return self._account_from_row(row)

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
               SET failed_attempt_count = failed_attempt_count + 1,
                   locked_until = CASE
                       WHEN failed_attempt_count + 1 >= %s
                            AND (locked_until IS NULL OR locked_until <= %s)
                       THEN %s
                       ELSE locked_until
                   END,
                   updated_at = %s
             WHERE id = %s
            RETURNING *
            """,
            (threshold, now, lock_until, now, account_id),
        )

    def record_successful_login(
        self, account_id: str, *, now: datetime, stamp_login: bool = True
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
               SET failed_attempt_count = 0, locked_until = NULL,
                   last_login_at = COALESCE(%s, last_login_at), updated_at = %s
             WHERE id = %s
            RETURNING *
            """,
            (now if stamp_login else None, now, account_id),
        )

    # password reset
    def set_password_reset(
        self, account_id: str, secret_hash: str, expiry: datetime, *, now: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
               SET password_reset_secret_hash = %s, password_reset_expiry = %s,
                   updated_at = %s
             WHERE id = %s
            RETURNING *
            """,
            (secret_hash, expiry, now, account_id),
        )

    def get_account_by_reset_hash(self, secret_hash: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE password_reset_secret_hash = %s", (secret_hash,)
        )

    def consume_password_reset(
        self, secret_hash: str, new_credential_hash: str, *, now: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
               SET credential_hash = %s,
                   password_reset_secret_hash = NULL, password_reset_expiry = NULL,
                   failed_attempt_count = 0, locked_until = NULL, updated_at = %s
             WHERE password_reset_secret_hash = %s AND password_reset_expiry > %s
            RETURNING *
            """,
            (new_credential_hash, now, secret_hash, now),
        )

    def clear_password_reset(self, account_id: str, secret_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                   SET password_reset_secret_hash = NULL, password_reset_expiry = NULL
                 WHERE id = %s AND password_reset_secret_hash = %s
                """,
                (account_id, secret_hash),
            )

    def update_credential(
        self, account_id: str, credential_hash: str, *, now: datetime
    ) -> Optional[Account]:
        if not credential_hash:
            raise ValueError("credential_hash must not be empty")
        return self._fetch_one(
            "UPDATE account SET credential_hash = %s, updated_at = %s WHERE id = %s RETURNING *",
            (credential_hash, now, account_id),
        )

    def verify_connection(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except StoreUnavailable:
            return False
        return True
