from __future__ import annotations

import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    """Account roles recognised by the identity core."""

    STUDENT = "student"
    FACULTY = "faculty"
    ADMIN = "admin"


class RegistrationStatus(str, Enum):
    """Registration lifecycle; only pending accounts transition."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ZERO_WIDTH_CHARS = "\u200b\u200c\u200d\ufeff"


def normalize_email(email: str) -> str:
    cleaned = "".join(c for c in email if c not in ZERO_WIDTH_CHARS)
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


@dataclass
class Account:
    id: str
    email: str
    credential_hash: str
    role: Role
    status: RegistrationStatus = RegistrationStatus.PENDING
    is_active: bool = False
    failed_attempt_count: int = 0
    locked_until: Optional[datetime] = None
    password_reset_secret_hash: Optional[str] = None
    password_reset_expiry: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    reactivated_by: Optional[str] = None
    reactivated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        credential_hash: str,
        role: Role | str,
        *,
        profile: Optional[Dict[str, Any]] = None,
        status: RegistrationStatus | str = RegistrationStatus.PENDING,
        is_active: bool = False,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            credential_hash=credential_hash,
            role=Role(role),
            status=RegistrationStatus(status),
            is_active=is_active,
            profile=dict(profile or {}),
            created_at=now,
            updated_at=now,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @property
    def can_login(self) -> bool:
        return self.status == RegistrationStatus.APPROVED and self.is_active

    def public_view(self) -> Dict[str, Any]:
        """Client-safe projection; never includes credential or lockout fields."""
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "registration_status": self.status.value,
            "is_active": self.is_active,
            "profile": dict(self.profile),
            "approved_at": self.approved_at,
            "rejected_at": self.rejected_at,
            "rejection_reason": self.rejection_reason,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


@dataclass
class StatusAudit:
    """Who performed a lifecycle transition and why."""

    actor_id: str
    reason: Optional[str] = None
