"""Tests for the in-process email queue: batching, deferral, retry backoff and rendering."""

from datetime import timedelta

from learnquest.service.email import render_template
from learnquest.service.email_queue import SUBJECTS, EmailKind, EmailQueue

from conftest import RecordingTransport


class RaisingTransport:
    def __init__(self):
        self.attempts = 0

    def send(self, *args, **kwargs):
        self.attempts += 1
        raise ConnectionError("smtp down")


class TestEnqueue:
    def test_each_enqueue_method_sets_kind_and_payload(self, email_queue, clock):
        email_queue.enqueue_verification("a@x.com", "A", "123456", "http://link")
        email_queue.enqueue_resend("a@x.com", "A", "654321")
        email_queue.enqueue_password_reset("a@x.com", "A", "111111", "http://reset")
        email_queue.enqueue_welcome("a@x.com", "A")
        email_queue.enqueue_password_changed("a@x.com", "A")
        email_queue.enqueue_account_locked("a@x.com", "A", clock.now)
        email_queue.enqueue_custom("a@x.com", "A", "Hello", "Body text")

        items = list(email_queue._queue)
        assert [i.kind for i in items] == [
            EmailKind.VERIFICATION,
            EmailKind.RESEND,
            EmailKind.RESET,
            EmailKind.WELCOME,
            EmailKind.CHANGED,
            EmailKind.LOCKED,
            EmailKind.CUSTOM,
        ]
        assert items[0].payload == {"code": "123456", "link": "http://link"}
        assert items[6].payload == {"subject": "Hello", "body": "Body text"}
        assert all(i.enqueued_at == clock.now and i.retry_count == 0 for i in items)
        assert email_queue.queue_count() == 7


class TestRendering:
    def test_render_template_replaces_every_placeholder(self):
        out = render_template("{{A}}-{{B}}-{{A}}-{{C}}", {"A": "1", "B": "<b>"})
        assert out == "1-<b>-1-{{C}}"

    def test_subjects_follow_kind(self, email_queue, transport):
        email_queue.enqueue_verification("a@x.com", "Ann", "123456", "http://link")
        email_queue.enqueue_custom("a@x.com", "Ann", "Custom subject", "Custom body")
        email_queue.process_batch()

        (to, subject, html, text), (_, custom_subject, _, custom_text) = transport.sent
        assert to == "a@x.com"
        assert subject == SUBJECTS[EmailKind.VERIFICATION] == "Email Verification Required"
        assert "123456" in html and "http://link" in text
        assert "Hi Ann" in text
        assert custom_subject == "Custom subject"
        assert "Custom body" in custom_text

    def test_locked_email_mentions_unlock_time(self, email_queue, transport, clock):
        email_queue.enqueue_account_locked("a@x.com", "Ann", clock.now + timedelta(minutes=15))
        email_queue.process_batch()
        assert "2024-03-01 12:15" in transport.sent[0][3]
        assert transport.sent[0][1] == "Account Temporarily Locked"


class TestBatching:
    def test_successful_items_are_removed(self, email_queue, transport):
        for n in range(3):
            email_queue.enqueue_welcome(f"u{n}@x.com", "U")
        result = email_queue.process_batch()
        assert result.sent == 3
        assert email_queue.queue_count() == 0
        assert [s[0] for s in transport.sent] == ["u0@x.com", "u1@x.com", "u2@x.com"]

    def test_batch_is_capped(self, email_queue, transport):
        for n in range(25):
            email_queue.enqueue_welcome(f"u{n}@x.com", "U")
        assert email_queue.process_batch().sent == 10
        assert email_queue.queue_count() == 15
        assert email_queue.process_batch().sent == 10
        assert email_queue.process_batch().sent == 5

    def test_future_item_is_deferred_without_blocking_others(self, email_queue, transport, clock):
        first = email_queue.enqueue_welcome("later@x.com", "L")
        first.next_retry_at = clock.now + timedelta(minutes=5)
        email_queue.enqueue_welcome("now@x.com", "N")

        result = email_queue.process_batch()

        assert result.deferred == 1
        assert result.sent == 1
        assert [s[0] for s in transport.sent] == ["now@x.com"]
        assert email_queue.queue_count() == 1

    def test_cycle_terminates_when_everything_is_deferred(self, email_queue, clock):
        for n in range(3):
            item = email_queue.enqueue_welcome(f"u{n}@x.com", "U")
            item.next_retry_at = clock.now + timedelta(minutes=1)
        result = email_queue.process_batch()
        assert result.deferred == 3
        assert result.attempted == 0
        assert email_queue.queue_count() == 3


class TestRetries:
    def test_failed_item_retries_with_increasing_backoff_then_drops(self, clock):
        transport = RecordingTransport(fail=True)
        queue = EmailQueue(transport, clock=clock)
        item = queue.enqueue_welcome("a@x.com", "A")

        backoffs = []
        for _ in range(10):
            if not queue.queue_count():
                break
            before = transport.attempts
            queue.process_batch()
            if transport.attempts > before and queue.queue_count():
                backoffs.append(item.next_retry_at - clock.now)
                clock.now = item.next_retry_at

        assert transport.attempts == 4
        assert backoffs == [timedelta(minutes=1), timedelta(minutes=2), timedelta(minutes=4)]
        assert queue.queue_count() == 0

        # dropped items never come back
        clock.advance(hours=1)
        queue.process_batch()
        assert transport.attempts == 4

    def test_transport_exception_counts_as_failure(self, clock):
        transport = RaisingTransport()
        queue = EmailQueue(transport, clock=clock, max_retry_attempts=1)
        queue.enqueue_welcome("a@x.com", "A")

        result = queue.process_batch()
        assert result.retried == 1
        clock.advance(minutes=5)
        result = queue.process_batch()
        assert result.dropped == 1
        assert transport.attempts == 2
        assert queue.queue_count() == 0

    def test_retry_is_not_attempted_before_its_time(self, clock):
        transport = RecordingTransport(fail=True)
        queue = EmailQueue(transport, clock=clock)
        queue.enqueue_welcome("a@x.com", "A")
        queue.process_batch()
        clock.advance(seconds=59)
        queue.process_batch()
        assert transport.attempts == 1

    def test_initial_send_plus_configured_retries(self, clock):
        transport = RecordingTransport(fail=True)
        queue = EmailQueue(transport, clock=clock, max_retry_attempts=3)
        queue.enqueue_welcome("a@x.com", "A")
        for _ in range(8):
            queue.process_batch()
            clock.advance(minutes=30)
        assert transport.attempts == 4
        assert queue.queue_count() == 0


class TestDrain:
    def test_drain_flushes_more_than_one_batch(self, email_queue, transport):
        for n in range(23):
            email_queue.enqueue_welcome(f"u{n}@x.com", "U")
        result = email_queue.drain()
        assert result.sent == 23
        assert email_queue.queue_count() == 0

    def test_drain_stops_when_only_backed_off_items_remain(self, clock):
        transport = RecordingTransport(fail=True)
        queue = EmailQueue(transport, clock=clock)
        queue.enqueue_welcome("a@x.com", "A")
        result = queue.drain()
        assert result.retried == 1
        assert queue.queue_count() == 1
        assert transport.attempts == 1
