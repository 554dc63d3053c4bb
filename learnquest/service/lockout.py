"""Process-local failed-login tracking with temporary lockouts.

Entries are keyed by the trimmed, lower-cased email. Each key hashes onto one
of a fixed set of stripe locks, so concurrent failures for the same identity
are serialized while unrelated identities proceed in parallel. State is not
persisted; a restart clears every counter and lockout.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Dict, Optional

from learnquest.logging import get_audit_logger, get_logger, mask_email

if TYPE_CHECKING:
    from learnquest.service.email_queue import EmailQueue
    from learnquest.storage.memory import MemoryStore
    from learnquest.storage.postgres import PostgresStore

logger = get_logger(__name__)
audit = get_audit_logger()

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCKOUT = timedelta(minutes=15)
DEFAULT_STALE_AFTER = timedelta(hours=1)
_STRIPES = 64


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class FailedLoginEntry:
    count: int
    updated_at: datetime
    locked_until: Optional[datetime] = None


class FailedLoginTracker:
    """Counts failed sign-ins per identity and locks identities that fail too often."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore | None" = None,
        email_queue: Optional["EmailQueue"] = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lockout_duration: timedelta = DEFAULT_LOCKOUT,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email_queue = email_queue
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.stale_after = stale_after
        self._entries: Dict[str, FailedLoginEntry] = {}
        self._stripes = [threading.Lock() for _ in range(_STRIPES)]
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="lockout-notify"
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _lock_for(self, key: str) -> threading.Lock:
        return self._stripes[hash(key) % _STRIPES]

    def record_failure(self, email: str) -> int:
        """Increment the failure count for ``email`` and return the new count.

        A lockout that has run out starts the count again from zero.
        """
        key = normalize_email(email)
        now = self._now()
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None or (entry.locked_until is not None and entry.locked_until <= now):
                entry = FailedLoginEntry(count=0, updated_at=now)
                self._entries[key] = entry
            entry.count += 1
            entry.updated_at = now
            count = entry.count
        logger.info("failed_login_recorded", email=mask_email(email), attempts=count)
        return count

    def lock(self, email: str) -> datetime:
        """Lock ``email`` for the lockout window, re-arming it if already locked."""
        key = normalize_email(email)
        now = self._now()
        unlock_at = now + self.lockout_duration
        with self._lock_for(key):
            self._entries[key] = FailedLoginEntry(
                count=self.max_attempts, updated_at=now, locked_until=unlock_at
            )
        audit.warning(
            "account_locked",
            email=mask_email(email),
            unlock_at=unlock_at.isoformat(),
            lockout_minutes=int(self.lockout_duration.total_seconds() // 60),
        )
        self._schedule_lock_notification(email, unlock_at)
        return unlock_at

    def _schedule_lock_notification(self, email: str, unlock_at: datetime) -> None:
        if self.store is None or self.email_queue is None:
            return
        try:
            self._executor.submit(self._notify_locked, email, unlock_at)
        except RuntimeError as exc:
            # executor already shut down
            logger.error(
                "lockout_notification_schedule_failed",
                email=mask_email(email),
                error=str(exc),
            )

    def _notify_locked(self, email: str, unlock_at: datetime) -> None:
        try:
            user = self.store.get_user_by_email(email)
            if not user:
                logger.warning("lockout_notification_user_missing", email=mask_email(email))
                return
            self.email_queue.enqueue_account_locked(user.email, user.full_name, unlock_at)
        except Exception as exc:
            logger.error(
                "lockout_notification_failed",
                email=mask_email(email),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def _active_lock(self, key: str, now: datetime) -> Optional[datetime]:
        entry = self._entries.get(key)
        if entry is None or entry.locked_until is None:
            return None
        if entry.locked_until <= now:
            return None
        return entry.locked_until

    def is_locked(self, email: str) -> bool:
        key = normalize_email(email)
        with self._lock_for(key):
            return self._active_lock(key, self._now()) is not None

    def remaining_lockout(self, email: str) -> Optional[timedelta]:
        key = normalize_email(email)
        now = self._now()
        with self._lock_for(key):
            locked_until = self._active_lock(key, now)
        if locked_until is None:
            return None
        return locked_until - now

    def failed_attempts(self, email: str) -> int:
        key = normalize_email(email)
        with self._lock_for(key):
            entry = self._entries.get(key)
            return entry.count if entry else 0

    def reset(self, email: str) -> None:
        key = normalize_email(email)
        with self._lock_for(key):
            removed = self._entries.pop(key, None)
        if removed is not None:
            logger.debug("failed_logins_reset", email=mask_email(email))

    def sweep(self) -> int:
        """Drop released lockouts and stale unlocked counters. Returns the number removed."""
        now = self._now()
        removed = 0
        for key in list(self._entries.keys()):
            with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is None:
                    continue
                if entry.count >= self.max_attempts:
                    expired = entry.locked_until is None or entry.locked_until <= now
                else:
                    expired = now - entry.updated_at > self.stale_after
                if expired:
                    del self._entries[key]
                    removed += 1
        logger.info("lockout_sweep_completed", removed=removed, remaining=len(self._entries))
        return removed

    def snapshot(self) -> Dict[str, FailedLoginEntry]:
        """Consistent copy of every entry, taken while holding all stripes."""
        for stripe in self._stripes:
            stripe.acquire()
        try:
            return {key: replace(entry) for key, entry in self._entries.items()}
        finally:
            for stripe in reversed(self._stripes):
                stripe.release()

    def locked_count(self) -> int:
        now = self._now()
        return sum(
            1
            for entry in self.snapshot().values()
            if entry.locked_until is not None and entry.locked_until > now
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)
