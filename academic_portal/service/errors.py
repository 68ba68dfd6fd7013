from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on:
    - validation_error (400)
    - conflict (400; duplicate email and non-pending transitions)
    - unauthorized / invalid_token (401)
    - registration_pending / registration_rejected / account_inactive (401)
    - forbidden (403)
    - not_found (404)
    - account_locked (423)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong secret; the two are indistinguishable."""

    def __init__(self) -> None:
        super().__init__("invalid email or password")


class RegistrationPending(AuthenticationError):
    error_code = "registration_pending"

    def __init__(self) -> None:
        super().__init__("registration is pending administrator approval")


class RegistrationRejected(AuthenticationError):
    error_code = "registration_rejected"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(
            "registration was rejected",
            detail={"rejection_reason": reason} if reason else None,
        )


class AccountInactive(AuthenticationError):
    error_code = "account_inactive"

    def __init__(self) -> None:
        super().__init__("account inactive")


class InvalidOrExpiredToken(AuthenticationError):
    """Token failed signature, type, audience or expiry checks (401).

    The reset routes raise it with ``status_code=400``.
    """
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many consecutive failures; the account is temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, now: datetime) -> None:
        self.locked_until = locked_until
        self.retry_after_seconds = max(1, int((locked_until - now).total_seconds()))
        super().__init__(
            "account temporarily locked due to repeated failed login attempts",
            detail={
                "locked_until": locked_until.isoformat(),
                "retry_after_seconds": self.retry_after_seconds,
            },
        )


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Request conflicts with the current state of the resource.

    Reported as 400 with a distinct ``conflict`` code.
    """
    status_code = 400
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self) -> None:
        super().__init__(
            "an account with this email already exists", detail={"field": "email"}
        )


class InvalidStateTransition(ConflictError):
    def __init__(self, current_state: str, message: Optional[str] = None) -> None:
        self.current_state = current_state
        super().__init__(
            message or f"registration is already {current_state}",
            detail={"current_state": current_state},
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "RegistrationPending",
    "RegistrationRejected",
    "AccountInactive",
    "InvalidOrExpiredToken",
    "AccountLocked",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "InvalidStateTransition",
    "ServerError",
]
