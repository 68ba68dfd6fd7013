from __future__ import annotations

from datetime import datetime, timedelta, timezone

from academic_portal.logging import get_logger
from academic_portal.service.errors import AccountLocked
from academic_portal.storage.common import AccountStore
from academic_portal.storage.models import Account

logger = get_logger(__name__)


class LockoutGuard:
    """Brute-force protection keyed on the account.

    A lock that has elapsed is cleared lazily on the next attempt. Counter
    updates are delegated to single atomic store operations so concurrent
    failures are never lost.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        max_attempts: int = 5,
        lock_duration: timedelta = timedelta(hours=2),
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def check(self, account: Account) -> Account:
        """Raise ``AccountLocked`` while locked; otherwise return a fresh record."""
        now = self._now()
        if account.locked_until is None:
            return account
        if account.locked_until > now:
            logger.info(
                "login_blocked_locked",
                account_id=account.id,
                locked_until=account.locked_until.isoformat(),
            )
            raise AccountLocked(account.locked_until, now)
        refreshed = self.store.clear_expired_lock(account.id, now=now)
        logger.info("account_lock_expired", account_id=account.id)
        return refreshed or account

    def record_failure(self, account: Account) -> Account:
        now = self._now()
        updated = self.store.record_failed_login(
            account.id,
            threshold=self.max_attempts,
            lock_until=now + self.lock_duration,
            now=now,
        )
        if updated is None:
            return account
        if updated.is_locked(now):
            logger.warning(
                "account_locked",
                account_id=updated.id,
                failed_attempts=updated.failed_attempt_count,
                locked_until=updated.locked_until.isoformat(),
            )
        else:
            logger.info(
                "login_failed",
                account_id=updated.id,
                failed_attempts=updated.failed_attempt_count,
            )
        return updated

    def record_success(self, account: Account, *, stamp_login: bool = True) -> Account:
        """Reset the counter; ``stamp_login`` is false when the login is refused."""
        updated = self.store.record_successful_login(
            account.id, now=self._now(), stamp_login=stamp_login
        )
        return updated or account
