# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recurring queue tick: pick due jobs, send them, apply retry or failure.

Job lifecycle driven by the processor::

    pending --(picked up)--> processing
    processing --(send succeeds)--> sent
    processing --(send fails, retries exhausted)--> failed
    processing --(send fails, retries left)--> pending (scheduled later)

A tick sends at most ``max_concurrent`` jobs concurrently and waits for all
of them to settle before sweeping expired jobs. Only one tick runs at a time;
a tick that fires while another is running is skipped.

Retry backoff is base 3: the k-th failure reschedules the job
``3 ** k`` minutes later (3, 9, 27 ...).
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from .logger import get_logger
from .models import JobStatus, SendJob
from .prometheus import MailMetrics
from .queue import EmailQueue
from .sender import MessageSender

DEFAULT_INTERVAL = 5.0
DEFAULT_MAX_CONCURRENT = 10
RETRY_BACKOFF_BASE = 3
SHUTDOWN_POLL_INTERVAL = 0.1


def retry_delay(retry_count: int) -> timedelta:
    """Delay before the next attempt after ``retry_count`` failures."""
    return timedelta(minutes=RETRY_BACKOFF_BASE ** retry_count)


class QueueProcessor:
    """Drives queued jobs through the sender on a fixed interval.

    Attributes:
        queue: Job table the processor reads and mutates.
        sender: Capability used to deliver each job.
        interval: Seconds between ticks.
        max_concurrent: Upper bound of jobs dispatched per tick.
        metrics: Prometheus collector.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        queue: EmailQueue,
        sender: MessageSender,
        *,
        interval: float = DEFAULT_INTERVAL,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.queue = queue
        self.sender = sender
        self.interval = max(0.05, float(interval))
        self.max_concurrent = max(1, int(max_concurrent))
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger("QueueProcessor")
        self._busy = False
        self._task: asyncio.Task | None = None
        self._wake_event = asyncio.Event()
        self._stop = asyncio.Event()

    @property
    def is_processing(self) -> bool:
        """True while a tick is in progress."""
        return self._busy

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ tick
    async def tick(self) -> int:
        """Run one processing sweep.

        Returns:
            Number of jobs dispatched, ``0`` when the tick was skipped.
        """
        if self._busy:
            self.logger.debug("Tick skipped: previous tick still running")
            return 0
        self._busy = True
        try:
            due = self.queue.get_due_items()
            batch = due[: self.max_concurrent]
            if batch:
                self.logger.debug("Processing %d of %d due jobs", len(batch), len(due))
                now = self.queue.now()
                for job in batch:
                    job.status = JobStatus.PROCESSING
                    job.updated_at = now
                results = await asyncio.gather(
                    *(self._process_item(job) for job in batch),
                    return_exceptions=True,
                )
                for job, outcome in zip(batch, results):
                    if isinstance(outcome, BaseException):
                        self.logger.error("Unexpected error processing job %s: %s", job.id, outcome)
            self.queue.cleanup_old_items()
            self.metrics.set_pending(self.queue.count_pending())
            return len(batch)
        finally:
            self._busy = False

    async def _process_item(self, job: SendJob) -> None:
        try:
            result = await self.sender.send(job.payload, job.user_id, job.provider_id)
        except Exception as exc:
            self._handle_failure(job, str(exc) or type(exc).__name__, None)
            return

        if result.success:
            now = self.queue.now()
            job.status = JobStatus.SENT
            job.sent_at = now
            job.updated_at = now
            job.sent_via = result.provider_id
            job.message_id = result.message_id
            job.error_message = None
            self.metrics.inc_sent(result.provider_id)
            self.logger.info("Email sent: %s via %s", job.id, result.provider_id)
            return

        message = result.error.message if result.error else "Unknown error"
        self._handle_failure(job, message, result.provider_id)

    def _handle_failure(self, job: SendJob, message: str, provider_id: str | None) -> None:
        now = self.queue.now()
        job.retry_count += 1
        job.error_message = message
        job.updated_at = now

        if job.retry_count >= job.max_retries:
            job.status = JobStatus.FAILED
            self.metrics.inc_failed(provider_id)
            self.logger.error(
                "Email failed permanently: %s after %d attempts: %s", job.id, job.retry_count, message
            )
            return

        job.status = JobStatus.PENDING
        job.scheduled_at = now + retry_delay(job.retry_count)
        self.metrics.inc_retried(provider_id)
        self.logger.warning(
            "Email retry scheduled: %s (attempt %d/%d) at %s: %s",
            job.id,
            job.retry_count,
            job.max_retries,
            job.scheduled_at.isoformat(),
            message,
        )

    # ------------------------------------------------------------- lifecycle
    def start(self) -> None:
        """Begin ticking every ``interval`` seconds. Idempotent."""
        if self.is_running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="queue-processor-loop")
        self.logger.info("Email queue processor started")

    async def stop(self) -> None:
        """Cancel the timer. A tick already in progress runs to completion."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        self._wake_event.set()
        if not self._busy:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.logger.info("Email queue processor stopped")

    async def shutdown(self) -> None:
        """Stop the timer, then wait until no tick is in progress."""
        await self.stop()
        while self._busy:
            await asyncio.sleep(SHUTDOWN_POLL_INTERVAL)

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as exc:
                self.logger.exception("Unhandled error in queue processor loop: %s", exc)
            if self._stop.is_set():
                break
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
            self._wake_event.clear()
