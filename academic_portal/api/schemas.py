from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from academic_portal.service.registration import validate_email_address

# Password bounds here only cap payload size; strength is checked by the service
MAX_PASSWORD_LENGTH = 128
MAX_PROFILE_KEYS = 50

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "registration_pending",
    "registration_rejected",
    "account_inactive",
    "account_locked",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_email(value: str) -> str:
    return validate_email_address(value)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    role: Literal["student", "faculty", "admin"]
    profile: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None and len(value) > MAX_PROFILE_KEYS:
            raise ValueError(f"profile may hold at most {MAX_PROFILE_KEYS} fields")
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class RegistrationStatusRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_status_email(cls, value: str) -> str:
        return _validate_email(value)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BulkApproveRequest(BaseModel):
    account_ids: List[str] = Field(..., min_length=1, max_length=200)


class ReactivateRequest(BaseModel):
    target: Literal["pending", "approved"] = "approved"


class AccountResponse(BaseModel):
    id: str
    email: str
    role: str
    registration_status: str
    is_active: bool
    profile: Dict[str, Any] = Field(default_factory=dict)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: AccountResponse


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    count: int


class BulkApprovalResponse(BaseModel):
    succeeded: List[str]
    already_approved: List[str]
    failed: List[Dict[str, str]]
