from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from academic_portal.logging import get_logger, hash_email
from academic_portal.service.credentials import CredentialVerifier, PasswordPolicy
from academic_portal.service.email import EmailService, NotificationDispatcher
from academic_portal.service.errors import InvalidOrExpiredToken
from academic_portal.storage.common import AccountStore
from academic_portal.storage.models import Account

logger = get_logger(__name__)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _reset_token_error() -> InvalidOrExpiredToken:
    return InvalidOrExpiredToken(
        "password reset token is invalid or has expired", status_code=400
    )


class PasswordResetFlow:
    """Single-use, time-boxed password reset secrets.

    Only a SHA-256 digest of the secret is stored. Consuming it replaces the
    credential and clears the reset fields in one atomic store operation.
    Access tokens issued before the reset stay valid until they expire;
    there is no revocation list.
    """

    def __init__(
        self,
        store: AccountStore,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        *,
        email: Optional[EmailService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        ttl: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.policy = policy
        self.email = email
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.ttl = ttl

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_reset(self, email: str) -> None:
        """Always returns quietly so callers cannot probe which emails exist."""
        account = self.store.get_account_by_email(email or "")
        if account is None or not account.is_active:
            logger.info(
                "password_reset_ignored",
                email_hash=hash_email(email or ""),
                reason="unknown" if account is None else "inactive",
            )
            return
        token = secrets.token_urlsafe(32)
        now = self._now()
        self.store.set_password_reset(
            account.id, _digest(token), now + self.ttl, now=now
        )
        logger.info("password_reset_requested", account_id=account.id)
        if self.email is not None:
            self.dispatcher.dispatch(
                "password_reset", self.email.send_password_reset, account.email, token
            )

    def _lookup(self, token: str) -> Account:
        if not token:
            raise _reset_token_error()
        secret_hash = _digest(token)
        account = self.store.get_account_by_reset_hash(secret_hash)
        if account is None:
            raise _reset_token_error()
        if account.password_reset_expiry is None or account.password_reset_expiry <= self._now():
            self.store.clear_password_reset(account.id, secret_hash)
            logger.info("password_reset_token_expired", account_id=account.id)
            raise _reset_token_error()
        return account

    async def verify_reset_token(self, token: str) -> Dict[str, Any]:
        account = self._lookup(token)
        return {
            "valid": True,
            "account": {
                "id": account.id,
                "email": account.email,
                "role": account.role.value,
            },
        }

    async def reset_password(self, token: str, new_secret: str) -> Account:
        self._lookup(token)
        self.policy.enforce(new_secret)
        credential_hash = self.verifier.hash(new_secret)
        account = self.store.consume_password_reset(
            _digest(token), credential_hash, now=self._now()
        )
        if account is None:
            # consumed or expired between lookup and update
            raise _reset_token_error()
        logger.info("password_reset_completed", account_id=account.id)
        return account
