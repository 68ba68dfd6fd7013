from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from academic_portal.config import get_settings, reset_settings_cache
from academic_portal.logging import get_logger
from academic_portal.service.auth import AuthService
from academic_portal.service.credentials import CredentialVerifier, PasswordPolicy
from academic_portal.service.email import EmailService, NotificationDispatcher
from academic_portal.service.lockout import LockoutGuard
from academic_portal.service.password_reset import PasswordResetFlow
from academic_portal.service.registration import RegistrationWorkflow
from academic_portal.service.tokens import TokenIssuer
from academic_portal.storage.memory import MemoryStore
from academic_portal.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN before it reaches a log line."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        # test runs keep the memory store in-process so each reset starts empty
        memory_root = None if self.settings.test_mode else self.settings.shared_fs_root
        try:
            self.store = (
                MemoryStore(fs_root=memory_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", message="notifications will be logged only")
        self.notifications = NotificationDispatcher()

        self.verifier = CredentialVerifier.from_settings(self.settings)
        self.policy = PasswordPolicy(min_length=self.settings.password_min_length)
        self.lockout = LockoutGuard(
            self.store,
            max_attempts=self.settings.max_failed_login_attempts,
            lock_duration=timedelta(minutes=self.settings.lockout_duration_minutes),
        )
        self.tokens = TokenIssuer(self.settings)
        self.auth = AuthService(
            self.store, self.verifier, self.policy, self.lockout, self.tokens
        )
        self.registration = RegistrationWorkflow(
            self.store,
            self.verifier,
            self.policy,
            email=self.email,
            dispatcher=self.notifications,
        )
        self.password_reset = PasswordResetFlow(
            self.store,
            self.verifier,
            self.policy,
            email=self.email,
            dispatcher=self.notifications,
            ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        logger.info("runtime_init_completed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
