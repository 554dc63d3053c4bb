"""Background loops for email delivery and lockout/token maintenance.

Each worker runs one cycle, then waits on a stop event for its interval, so
shutdown takes effect between cycles. Blocking work (SMTP, database) runs in
a thread via ``asyncio.to_thread``; a send already in flight is allowed to
finish or hit its own timeout rather than being cancelled.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from learnquest.logging import get_logger

if TYPE_CHECKING:
    from learnquest.service.email_queue import EmailQueue
    from learnquest.service.lockout import FailedLoginTracker
    from learnquest.service.tokens import TokenIssuer

logger = get_logger(__name__)

DEFAULT_STOP_GRACE_SECONDS = 35.0
MAX_ERROR_BACKOFF_SECONDS = 300.0


class PeriodicWorker:
    """Runs ``run_once`` every ``interval`` seconds until stopped."""

    name = "worker"

    def __init__(
        self, interval: float, *, stop_grace: float = DEFAULT_STOP_GRACE_SECONDS
    ) -> None:
        self.interval = interval
        self.stop_grace = stop_grace
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.cycles = 0
        self.consecutive_errors = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        raise NotImplementedError

    async def on_stop(self) -> None:
        """Hook run once after the loop exits."""

    async def start(self) -> None:
        if self.running:
            logger.warning(f"{self.name}_already_running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"{self.name}_started", interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}_stop_timeout", grace_seconds=self.stop_grace)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        try:
            await self.on_stop()
        except Exception as exc:
            logger.error(
                f"{self.name}_shutdown_error",
                error=str(exc),
                error_type=type(exc).__name__,
            )
        logger.info(f"{self.name}_stopped", cycles=self.cycles)

    def _next_delay(self) -> float:
        if self.consecutive_errors > 3:
            backoff = min(
                MAX_ERROR_BACKOFF_SECONDS,
                self.interval * (2 ** (self.consecutive_errors - 3)),
            )
            logger.warning(
                f"{self.name}_backoff",
                backoff_seconds=backoff,
                consecutive_errors=self.consecutive_errors,
            )
            return backoff
        return self.interval

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
                self.consecutive_errors = 0
            except Exception as exc:
                self.consecutive_errors += 1
                logger.error(
                    f"{self.name}_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=self.consecutive_errors,
                )
            self.cycles += 1
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._next_delay())
            except asyncio.TimeoutError:
                pass


class EmailQueueWorker(PeriodicWorker):
    """Sends one batch of the email queue per cycle and one last batch on stop.

    The last batch is bounded by ``stop_grace``; anything still queued after it
    is lost with the process.
    """

    name = "email_queue_worker"

    def __init__(self, queue: "EmailQueue", *, interval: float = 5.0, **kwargs) -> None:
        super().__init__(interval, **kwargs)
        self.queue = queue

    async def run_once(self) -> None:
        if self.queue.queue_count():
            await asyncio.to_thread(self.queue.process_batch)

    async def on_stop(self) -> None:
        pending = self.queue.queue_count()
        if not pending:
            return
        logger.info("email_queue_final_batch", pending=pending)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.queue.process_batch), timeout=self.stop_grace
            )
        except asyncio.TimeoutError:
            logger.warning(
                "email_queue_final_batch_timeout",
                grace_seconds=self.stop_grace,
                remaining=self.queue.queue_count(),
            )
            return
        left = self.queue.queue_count()
        if left:
            logger.warning("email_queue_undelivered_at_shutdown", remaining=left)
        logger.info("email_queue_final_batch_complete", sent=result.sent, remaining=left)


class MaintenanceWorker(PeriodicWorker):
    """Sweeps expired lockouts and purges expired blacklist/refresh rows."""

    name = "maintenance_worker"

    def __init__(
        self,
        tracker: "FailedLoginTracker",
        tokens: Optional["TokenIssuer"] = None,
        *,
        interval: float = 30 * 60,
        **kwargs,
    ) -> None:
        super().__init__(interval, **kwargs)
        self.tracker = tracker
        self.tokens = tokens

    async def run_once(self) -> None:
        self.tracker.sweep()
        if self.tokens is not None:
            await asyncio.to_thread(self.tokens.purge_expired)
