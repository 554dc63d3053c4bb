"""In-process queue of outbound notification emails.

Callers enqueue and move on; delivery happens later on the drain loop and no
receipt is surfaced back. A failed send is retried up to ``max_retry_attempts``
times with exponential backoff (``base * 2**(retry - 1)`` minutes), then dropped.
The queue is not persisted: a restart loses anything still queued.
"""

from __future__ import annotations

import collections
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Protocol

from learnquest.logging import get_logger, mask_email
from learnquest.service.email import LAYOUT_TEMPLATE, TEXT_TEMPLATE, render_template

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_MINUTES = 1


class EmailKind(str, Enum):
    VERIFICATION = "verification"
    RESEND = "resend"
    RESET = "reset"
    WELCOME = "welcome"
    CHANGED = "changed"
    LOCKED = "locked"
    CUSTOM = "custom"


SUBJECTS: Dict[EmailKind, str] = {
    EmailKind.VERIFICATION: "Email Verification Required",
    EmailKind.RESEND: "New Verification Code",
    EmailKind.RESET: "Password Reset Request",
    EmailKind.WELCOME: "Welcome to LearnQuest!",
    EmailKind.CHANGED: "Password Changed Successfully",
    EmailKind.LOCKED: "Account Temporarily Locked",
}


class EmailTransport(Protocol):
    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool: ...


@dataclass
class EmailQueueItem:
    to_email: str
    full_name: str
    kind: EmailKind
    payload: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None


@dataclass
class BatchResult:
    sent: int = 0
    deferred: int = 0
    retried: int = 0
    dropped: int = 0

    @property
    def attempted(self) -> int:
        return self.sent + self.retried + self.dropped


def _content_for(item: EmailQueueItem, support_email: str) -> Dict[str, str]:
    payload = item.payload
    kind = item.kind
    if kind is EmailKind.VERIFICATION:
        return {
            "TITLE": "Verify your email",
            "MESSAGE": "Thanks for signing up! Use the code below to verify your email address.",
            "CONTENT": f"Your verification code is {payload['code']}. "
            f"You can also verify with this link: {payload['link']}",
            "FOOTER_MESSAGE": "This code expires in 30 minutes.",
        }
    if kind is EmailKind.RESEND:
        return {
            "TITLE": "Your new verification code",
            "MESSAGE": "Here is a new code to verify your email address.",
            "CONTENT": f"Your verification code is {payload['code']}.",
            "FOOTER_MESSAGE": "This code expires in 30 minutes.",
        }
    if kind is EmailKind.RESET:
        return {
            "TITLE": "Reset your password",
            "MESSAGE": "We received a request to reset your password.",
            "CONTENT": f"Your reset code is {payload['code']}. "
            f"Or reset with this link: {payload['link']}",
            "FOOTER_MESSAGE": "If you didn't request this, you can safely ignore this email.",
        }
    if kind is EmailKind.WELCOME:
        return {
            "TITLE": "Welcome to LearnQuest!",
            "MESSAGE": "Your account is verified and ready to use.",
            "CONTENT": "Start exploring courses from your dashboard.",
            "FOOTER_MESSAGE": f"Questions? Contact {support_email}.",
        }
    if kind is EmailKind.CHANGED:
        return {
            "TITLE": "Your password was changed",
            "MESSAGE": "The password on your account was changed successfully.",
            "CONTENT": "You can now sign in with your new password.",
            "FOOTER_MESSAGE": f"If this wasn't you, contact {support_email} immediately.",
        }
    if kind is EmailKind.LOCKED:
        unlock_at = payload["unlock_at"]
        return {
            "TITLE": "Account temporarily locked",
            "MESSAGE": "We locked your account after several failed sign-in attempts.",
            "CONTENT": f"You can try again after {unlock_at:%Y-%m-%d %H:%M} UTC.",
            "FOOTER_MESSAGE": f"If this wasn't you, contact {support_email}.",
        }
    return {
        "TITLE": payload.get("subject", ""),
        "MESSAGE": payload.get("body", ""),
        "CONTENT": "",
        "FOOTER_MESSAGE": "",
    }


class EmailQueue:
    """FIFO of pending emails drained in bounded batches by a background loop.

    ``collections.deque`` append/popleft are atomic, so producers on request
    threads and the drain loop need no shared lock.
    """

    def __init__(
        self,
        transport: EmailTransport,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        retry_base_minutes: int = DEFAULT_RETRY_BASE_MINUTES,
        support_email: str = "support@learnquest.local",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.transport = transport
        self.batch_size = batch_size
        self.max_retry_attempts = max_retry_attempts
        self.retry_base_minutes = retry_base_minutes
        self.support_email = support_email
        self._queue: Deque[EmailQueueItem] = collections.deque()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _enqueue(
        self, to_email: str, full_name: str, kind: EmailKind, **payload: Any
    ) -> EmailQueueItem:
        item = EmailQueueItem(
            to_email=to_email,
            full_name=full_name,
            kind=kind,
            payload=payload,
            enqueued_at=self._now(),
        )
        self._queue.append(item)
        logger.debug("email_enqueued", to=mask_email(to_email), kind=kind.value)
        return item

    def enqueue_verification(
        self, to_email: str, full_name: str, code: str, link: str
    ) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.VERIFICATION, code=code, link=link)

    def enqueue_resend(self, to_email: str, full_name: str, code: str) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.RESEND, code=code)

    def enqueue_password_reset(
        self, to_email: str, full_name: str, code: str, link: str
    ) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.RESET, code=code, link=link)

    def enqueue_welcome(self, to_email: str, full_name: str) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.WELCOME)

    def enqueue_password_changed(self, to_email: str, full_name: str) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.CHANGED)

    def enqueue_account_locked(
        self, to_email: str, full_name: str, unlock_at: datetime
    ) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.LOCKED, unlock_at=unlock_at)

    def enqueue_custom(
        self, to_email: str, full_name: str, subject: str, body: str
    ) -> EmailQueueItem:
        return self._enqueue(to_email, full_name, EmailKind.CUSTOM, subject=subject, body=body)

    def queue_count(self) -> int:
        return len(self._queue)

    def render(self, item: EmailQueueItem) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for ``item``."""
        if item.kind is EmailKind.CUSTOM:
            subject = item.payload.get("subject", "")
        else:
            subject = SUBJECTS[item.kind]
        values = {"FULL_NAME": item.full_name, **_content_for(item, self.support_email)}
        return (
            subject,
            render_template(LAYOUT_TEMPLATE, values),
            render_template(TEXT_TEMPLATE, values),
        )

    def _deliver(self, item: EmailQueueItem) -> bool:
        try:
            subject, html_body, text_body = self.render(item)
            return bool(self.transport.send(item.to_email, subject, html_body, text_body))
        except Exception as exc:
            logger.error(
                "email_delivery_error",
                to=mask_email(item.to_email),
                kind=item.kind.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    def process_batch(self) -> BatchResult:
        """Attempt delivery of up to ``batch_size`` due items.

        A cycle looks at no more items than were queued when it started, so
        items re-appended during the cycle wait for the next one. Items whose
        retry time has not arrived go back to the tail untouched.
        """
        result = BatchResult()
        now = self._now()
        budget = len(self._queue)
        while budget > 0 and result.attempted < self.batch_size:
            budget -= 1
            try:
                item = self._queue.popleft()
            except IndexError:
                break
            if item.next_retry_at is not None and item.next_retry_at > now:
                self._queue.append(item)
                result.deferred += 1
                continue
            if self._deliver(item):
                result.sent += 1
                continue
            if item.retry_count < self.max_retry_attempts:
                item.retry_count += 1
                delay = timedelta(minutes=self.retry_base_minutes * 2 ** (item.retry_count - 1))
                item.next_retry_at = now + delay
                self._queue.append(item)
                result.retried += 1
                logger.warning(
                    "email_send_retry_scheduled",
                    to=mask_email(item.to_email),
                    kind=item.kind.value,
                    retry_count=item.retry_count,
                    next_retry_at=item.next_retry_at.isoformat(),
                )
            else:
                result.dropped += 1
                logger.error(
                    "email_permanently_failed",
                    to=mask_email(item.to_email),
                    kind=item.kind.value,
                    attempts=item.retry_count + 1,
                )
        if result.attempted or result.deferred:
            logger.info(
                "email_batch_processed",
                sent=result.sent,
                deferred=result.deferred,
                retried=result.retried,
                dropped=result.dropped,
                remaining=len(self._queue),
            )
        return result

    def drain(self) -> BatchResult:
        """Process batches until the queue is empty or only backed-off items remain."""
        total = BatchResult()
        while self._queue:
            result = self.process_batch()
            total.sent += result.sent
            total.retried += result.retried
            total.dropped += result.dropped
            total.deferred = result.deferred
            if result.attempted == 0:
                break
        return total
