from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from academic_portal.logging import get_logger, hash_email
from academic_portal.service.credentials import CredentialVerifier, PasswordPolicy
from academic_portal.service.errors import (
    AccountInactive,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    RegistrationPending,
    RegistrationRejected,
    ValidationError,
)
from academic_portal.service.lockout import LockoutGuard
from academic_portal.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair
from academic_portal.storage.common import AccountStore
from academic_portal.storage.models import Account, RegistrationStatus

logger = get_logger(__name__)


@dataclass
class AuthContext:
    account_id: str
    role: str
    email: Optional[str] = None


@dataclass
class LoginResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Login orchestration, refresh and the bearer-token gate."""

    def __init__(
        self,
        store: AccountStore,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        lockout: LockoutGuard,
        tokens: TokenIssuer,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.policy = policy
        self.lockout = lockout
        self.tokens = tokens

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _check_lifecycle(account: Account) -> None:
        if account.status == RegistrationStatus.PENDING:
            raise RegistrationPending()
        if account.status == RegistrationStatus.REJECTED:
            raise RegistrationRejected(account.rejection_reason)
        if not account.is_active:
            raise AccountInactive()

    async def login(self, email: str, secret: str) -> LoginResult:
        account = self.store.get_account_by_email(email or "")
        if account is None:
            self.verifier.verify_dummy(secret or "")
            logger.info("login_failed", email_hash=hash_email(email or ""), reason="unknown")
            raise InvalidCredentials()

        account = self.lockout.check(account)

        if not self.verifier.verify(secret or "", account.credential_hash):
            self.lockout.record_failure(account)
            raise InvalidCredentials()

        account = self.lockout.record_success(account, stamp_login=account.can_login)
        self._check_lifecycle(account)

        if self.verifier.needs_rehash(account.credential_hash):
            account = (
                self.store.update_credential(
                    account.id, self.verifier.hash(secret), now=self._now()
                )
                or account
            )
            logger.info("credential_rehashed", account_id=account.id)

        tokens = self.tokens.issue(account)
        logger.info("login_succeeded", account_id=account.id, role=account.role.value)
        return LoginResult(account=account, tokens=tokens)

    async def refresh(self, refresh_token: str) -> tuple[str, datetime]:
        """Mint a new access token, re-checking the account's current state."""
        payload = self.tokens.decode(refresh_token, REFRESH)
        account = self.store.get_account(payload["sub"])
        if account is None:
            raise InvalidOrExpiredToken()
        if not account.can_login:
            logger.info(
                "refresh_denied",
                account_id=account.id,
                status=account.status.value,
                is_active=account.is_active,
            )
            raise AccountInactive()
        return self.tokens.issue_access(account)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        """Validate the bearer access token; no store access."""
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("authentication required")
        payload = self.tokens.decode(token, ACCESS)
        role = payload.get("role")
        if not role:
            raise InvalidOrExpiredToken()
        if required_role and role != required_role:
            raise ForbiddenError(f"{required_role} role required")
        return AuthContext(
            account_id=payload["sub"], role=role, email=payload.get("email")
        )

    async def current_account(self, ctx: AuthContext) -> Account:
        account = self.store.get_account(ctx.account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def change_password(
        self, ctx: AuthContext, current_secret: str, new_secret: str
    ) -> Account:
        account = await self.current_account(ctx)
        if not self.verifier.verify(current_secret or "", account.credential_hash):
            raise ValidationError(
                "current password is incorrect", detail={"field": "current_password"}
            )
        if current_secret == new_secret:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        self.policy.enforce(new_secret, field="new_password")
        updated = self.store.update_credential(
            account.id, self.verifier.hash(new_secret), now=self._now()
        )
        if updated is None:
            raise NotFoundError("account not found")
        logger.info("password_changed", account_id=account.id)
        return updated
