from __future__ import annotations

import threading
from datetime import timedelta
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlparse, urlunparse

from learnquest.config import get_settings, reset_settings_cache
from learnquest.logging import get_logger
from learnquest.service.accounts import AccountService
from learnquest.service.cookies import ResponseCookieJar
from learnquest.service.email import EmailService
from learnquest.service.email_queue import EmailQueue
from learnquest.service.lockout import FailedLoginTracker
from learnquest.service.passwords import PasswordHasher
from learnquest.service.tokens import TokenIssuer
from learnquest.service.workers import EmailQueueWorker, MaintenanceWorker
from learnquest.storage.memory import MemoryStore
from learnquest.storage.postgres import PostgresStore

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
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
    """Holds the process-scoped services and background workers."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            security=self.settings.smtp_security,
            timeout=self.settings.smtp_timeout_seconds,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.email_queue = EmailQueue(
            self.email,
            batch_size=self.settings.email_batch_size,
            max_retry_attempts=self.settings.email_max_retry_attempts,
            retry_base_minutes=self.settings.email_retry_base_minutes,
            support_email=self.settings.support_email,
        )
        self.hasher = PasswordHasher(self.settings.password_hash_iterations)
        self.tracker = FailedLoginTracker(
            self.store,
            self.email_queue,
            max_attempts=self.settings.max_failed_attempts,
            lockout_duration=timedelta(minutes=self.settings.lockout_minutes),
            stale_after=timedelta(minutes=self.settings.stale_failure_minutes),
        )
        self.tokens = TokenIssuer(self.store, self.settings)
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.tracker,
            self.email_queue,
            self.tokens,
            self.settings,
        )
        self.email_worker = EmailQueueWorker(
            self.email_queue,
            interval=self.settings.email_drain_interval_seconds,
            stop_grace=self.settings.smtp_timeout_seconds + 5,
        )
        self.maintenance_worker = MaintenanceWorker(
            self.tracker,
            self.tokens,
            interval=self.settings.lockout_sweep_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            email_configured=self.email.is_configured,
            smtp_security=self.settings.smtp_security.value,
            lockout_minutes=self.settings.lockout_minutes,
        )

    async def start_workers(self) -> None:
        await self.email_worker.start()
        await self.maintenance_worker.start()

    async def stop_workers(self) -> None:
        await self.maintenance_worker.stop()
        await self.email_worker.stop()

    def cookie_jar(self, request: "Request", response: "Response") -> ResponseCookieJar:
        """Cookie jar for one request, with Secure set from ``COOKIE_SECURE``."""
        return ResponseCookieJar(request, response, secure=self.settings.cookie_secure)

    async def close(self) -> None:
        await self.stop_workers()
        self.close_sync()

    def close_sync(self) -> None:
        self.tracker.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
        if runtime is not None:
            runtime.close_sync()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
