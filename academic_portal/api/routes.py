from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Query, Response

from academic_portal.api.schemas import (
    AccessTokenResponse,
    AccountListResponse,
    AccountResponse,
    AuthResponse,
    BulkApprovalResponse,
    BulkApproveRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ReactivateRequest,
    RegisterRequest,
    RegistrationStatusRequest,
    RejectRequest,
    TokenRefreshRequest,
)
from academic_portal.logging import get_logger
from academic_portal.service.auth import AuthContext
from academic_portal.service.runtime import get_runtime
from academic_portal.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")

REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(**account.public_view())


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization, required_role="admin")


def _set_refresh_cookie(response: Response, token: str, *, max_age_minutes: int) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="strict",
        max_age=max_age_minutes * 60,
        path="/api/auth",
    )


# public auth routes
@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a pending account awaiting administrator approval.

    Raises:
        400: duplicate email (``conflict``) or validation failure
        403: if self-registration is disabled
    """
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise _http_error("forbidden", "registration disabled", status_code=403)
    account = await runtime.registration.register(
        body.email, body.password, body.role, profile=body.profile
    )
    return Envelope(
        status="ok",
        data={
            "message": "registration submitted and pending approval",
            "user": _account_response(account),
        },
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials, pending/rejected registration or inactive account
        423: account locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    _set_refresh_cookie(
        response,
        result.tokens.refresh_token,
        max_age_minutes=runtime.settings.refresh_token_ttl_minutes,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_at=result.tokens.access_expires_at,
            user=_account_response(result.account),
        ),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange a refresh token (body or cookie) for a new access token."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error("unauthorized", "refresh token required", status_code=401)
    access_token, expires_at = await runtime.auth.refresh(token)
    return Envelope(
        status="ok",
        data=AccessTokenResponse(access_token=access_token, expires_at=expires_at),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    # tokens are stateless; the client discards its access token
    response.delete_cookie(REFRESH_COOKIE, path="/api/auth")
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Start a password reset; the response never reveals whether the email exists."""
    runtime = get_runtime()
    await runtime.password_reset.request_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "if an account exists for this email, a reset link has been sent"},
    )


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.password_reset.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.get("/verify-reset-token/{token}", response_model=Envelope, tags=["auth"])
async def verify_reset_token(token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    result = await runtime.password_reset.verify_reset_token(token)
    return Envelope(status="ok", data=result)


@router.post("/registration-status", response_model=Envelope, tags=["auth"])
async def registration_status(body: RegistrationStatusRequest):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=await runtime.registration.registration_status(body.email)
    )


# authenticated routes
@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = await runtime.auth.current_account(principal)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password changed"})


# administration
@router.get("/admin/registrations", response_model=Envelope, tags=["admin"])
async def list_registrations(
    status: Literal["pending", "approved", "rejected"] = Query("pending"),
    role: Optional[Literal["student", "faculty", "admin"]] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    accounts = await runtime.registration.list_registrations(
        principal, status=status, role=role, limit=limit
    )
    items = [_account_response(a) for a in accounts]
    return Envelope(status="ok", data=AccountListResponse(items=items, count=len(items)))


@router.get("/admin/registrations/statistics", response_model=Envelope, tags=["admin"])
async def registration_statistics(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.registration.statistics(principal))


@router.post("/admin/registrations/bulk-approve", response_model=Envelope, tags=["admin"])
async def bulk_approve(
    body: BulkApproveRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    result = await runtime.registration.bulk_approve(body.account_ids, principal)
    return Envelope(status="ok", data=BulkApprovalResponse(**result.as_dict()))


@router.post(
    "/admin/registrations/{account_id}/approve", response_model=Envelope, tags=["admin"]
)
async def approve_registration(
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.registration.approve(account_id, principal)
    return Envelope(status="ok", data=_account_response(account))


@router.post(
    "/admin/registrations/{account_id}/reject", response_model=Envelope, tags=["admin"]
)
async def reject_registration(
    body: RejectRequest,
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.registration.reject(account_id, principal, body.reason)
    return Envelope(status="ok", data=_account_response(account))


@router.post(
    "/admin/registrations/{account_id}/reactivate", response_model=Envelope, tags=["admin"]
)
async def reactivate_registration(
    body: Optional[ReactivateRequest] = None,
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    target = body.target if body else "approved"
    account = await runtime.registration.reactivate(account_id, principal, target=target)
    return Envelope(status="ok", data=_account_response(account))


@router.post(
    "/admin/accounts/{account_id}/deactivate", response_model=Envelope, tags=["admin"]
)
async def deactivate_account(
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.registration.deactivate(account_id, principal)
    return Envelope(status="ok", data=_account_response(account))
