# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the mail dispatch service.

This module provides :class:`MailDispatchCore`, the constructed coordinator
that owns every runtime component:

- the provider registry and the failover sender built on it
- the in-memory job queue and the processor ticking over it
- the maintenance loops (provider health checks, daily counter reset)
- Prometheus metrics shared by all of the above

The core exposes a command-based API (:meth:`MailDispatchCore.handle_command`)
used by the HTTP layer, plus direct methods for programmatic callers.

Example:
    Running the dispatcher::

        registry = build_registry(settings)
        core = MailDispatchCore(registry=registry, start_active=True)
        await core.start()

        job_id = await core.send_email(payload, user_id=42, options={"priority": "high"})

        await core.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from .logger import get_logger
from .models import (
    AUTO_PROVIDER,
    BulkItem,
    BulkOptions,
    EmailPayload,
    EnqueueOptions,
    JobStatus,
    SendJob,
    SendResult,
    utc_now,
)
from .processor import DEFAULT_INTERVAL, DEFAULT_MAX_CONCURRENT, QueueProcessor
from .prometheus import MailMetrics
from .providers import SMTPPool, SMTPProvider
from .queue import DEFAULT_RETENTION_HOURS, Clock, EmailQueue
from .registry import ProviderRegistry
from .sender import MessageSender, NoProviderAvailableError, ProviderSender

DEFAULT_HEALTH_CHECK_INTERVAL = 300.0
DAILY_RESET_CHECK_INTERVAL = 60.0

Sleep = Callable[[float], Awaitable[Any]]


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


def _user_id_error(value: Any, required: bool = True) -> str | None:
    if value is None:
        return "user_id required" if required else None
    try:
        int(value)
    except (TypeError, ValueError):
        return f"invalid user_id: {value!r}"
    return None


class MailDispatchCore:
    """Central orchestrator for the mail dispatch service.

    Attributes:
        registry: Provider registry used for selection and health.
        sender: Capability the processor sends through.
        queue: In-memory job table.
        processor: Recurring queue tick.
        metrics: Prometheus metrics collector.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry | None = None,
        sender: MessageSender | None = None,
        queue: EmailQueue | None = None,
        metrics: MailMetrics | None = None,
        logger=None,
        clock: Clock | None = None,
        interval: float = DEFAULT_INTERVAL,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_retries: int = 3,
        retention_hours: float = DEFAULT_RETENTION_HOURS,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        start_active: bool = True,
        sleep: Sleep = asyncio.sleep,
    ):
        """Wire the dispatcher components.

        Args:
            registry: Provider registry. An empty one is created if omitted.
            sender: Sender capability. Defaults to a :class:`ProviderSender`
                over ``registry``.
            queue: Job table. Created from ``clock``, ``max_retries`` and
                ``retention_hours`` if omitted.
            metrics: Prometheus collector shared by all components.
            logger: Custom logger instance.
            clock: Current-time callable for a queue created here.
            interval: Seconds between processor ticks.
            max_concurrent: Jobs dispatched per tick.
            max_retries: Attempts before a job becomes ``failed``.
            retention_hours: Age after which terminal jobs are swept.
            health_check_interval: Seconds between provider health checks;
                ``0`` disables the loop.
            start_active: Whether :meth:`start` also starts the processor.
            sleep: Awaitable used between bulk batches.
        """
        self.logger = logger or get_logger()
        self.metrics = metrics or MailMetrics()
        self.registry = registry or ProviderRegistry()
        self.sender: MessageSender = sender or ProviderSender(self.registry, metrics=self.metrics)
        self.queue = queue or EmailQueue(clock=clock, max_retries=max_retries, retention_hours=retention_hours)
        self.processor = QueueProcessor(
            self.queue,
            self.sender,
            interval=interval,
            max_concurrent=max_concurrent,
            metrics=self.metrics,
        )
        self._health_check_interval = float(health_check_interval)
        self._start_active = start_active
        self._sleep = sleep
        self._stop = asyncio.Event()
        self._task_health: asyncio.Task | None = None
        self._task_daily_reset: asyncio.Task | None = None

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``sendEmail``, ``sendBulk``: enqueue one or many messages
        - ``sendDirect``: send immediately, bypassing the queue
        - ``getQueueItem``, ``listUserQueue``, ``cancelEmail``: job access;
          when ``user_id`` is given, other users' jobs are reported as not found
        - ``queueStatistics``: aggregate queue counters
        - ``listProviders``, ``healthCheck``, ``resetDailyCounters``: providers
        - ``run now``: process due jobs immediately
        - ``suspend``, ``activate``: pause or resume the processor

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        match cmd:
            case "sendEmail":
                error = _user_id_error(payload.get("user_id"))
                if error:
                    return {"ok": False, "error": error}
                try:
                    job_id = await self.send_email(
                        payload.get("payload") or {},
                        int(payload["user_id"]),
                        payload.get("options"),
                    )
                except ValidationError as exc:
                    return {"ok": False, "error": _validation_message(exc)}
                return {"ok": True, "id": job_id}
            case "sendBulk":
                items = payload.get("items") or []
                try:
                    ids = await self.send_bulk_emails(items, payload.get("options"))
                except ValidationError as exc:
                    return {"ok": False, "error": _validation_message(exc)}
                return {"ok": True, "ids": ids, "queued": len(ids), "skipped": len(items) - len(ids)}
            case "sendDirect":
                error = _user_id_error(payload.get("user_id"))
                if error:
                    return {"ok": False, "error": error}
                try:
                    result = await self.send_email_direct(
                        payload.get("payload") or {},
                        int(payload["user_id"]),
                        payload.get("provider_id") or AUTO_PROVIDER,
                    )
                except ValidationError as exc:
                    return {"ok": False, "error": _validation_message(exc)}
                except NoProviderAvailableError as exc:
                    return {"ok": False, "error": str(exc), "code": exc.code}
                return {"ok": result.success, "result": result.to_dict()}
            case "getQueueItem":
                error = _user_id_error(payload.get("user_id"), required=False)
                if error:
                    return {"ok": False, "error": error}
                job = self._owned_job(payload.get("id"), payload.get("user_id"))
                if job is None:
                    return {"ok": False, "error": "job not found"}
                return {"ok": True, **job.to_dict()}
            case "listUserQueue":
                error = _user_id_error(payload.get("user_id"))
                if error:
                    return {"ok": False, "error": error}
                jobs = self.queue.get_user_queue_items(int(payload["user_id"]))
                return {"ok": True, "jobs": [job.to_dict() for job in jobs]}
            case "cancelEmail":
                error = _user_id_error(payload.get("user_id"), required=False)
                if error:
                    return {"ok": False, "error": error}
                job = self._owned_job(payload.get("id"), payload.get("user_id"))
                if job is None:
                    return {"ok": False, "error": "job not found"}
                if not self.queue.cancel_email(job.id):
                    return {"ok": False, "error": f"job is {job.status.value}, only pending jobs can be cancelled"}
                self.metrics.set_pending(self.queue.count_pending())
                return {"ok": True, "id": job.id, "status": JobStatus.CANCELLED.value}
            case "queueStatistics":
                return {"ok": True, **self.queue.get_queue_statistics()}
            case "listProviders":
                return {"ok": True, "providers": self.registry.get_providers_status()}
            case "healthCheck":
                results = await self.registry.perform_health_checks()
                return {"ok": True, "results": [result.to_dict() for result in results]}
            case "resetDailyCounters":
                self.registry.reset_daily_counters()
                return {"ok": True}
            case "run now":
                processed = await self.processor.tick()
                return {"ok": True, "processed": processed}
            case "suspend":
                await self.processor.stop()
                return {"ok": True, "active": False}
            case "activate":
                self.processor.start()
                return {"ok": True, "active": True}
            case _:
                return {"ok": False, "error": "unknown command"}

    def _owned_job(self, job_id: str | None, user_id: Any) -> SendJob | None:
        if not job_id:
            return None
        job = self.queue.get_queue_item(job_id)
        if job is None:
            return None
        if user_id is not None and job.user_id != int(user_id):
            return None
        return job

    # ------------------------------------------------------------------ sending
    async def send_email(
        self,
        payload: EmailPayload | Mapping[str, Any],
        user_id: int,
        options: EnqueueOptions | Mapping[str, Any] | None = None,
    ) -> str:
        """Queue one message and return the job id.

        Raises:
            pydantic.ValidationError: If ``payload`` or ``options`` is malformed.
        """
        job_id = self.queue.add_to_queue(payload, user_id, options)
        self.metrics.set_pending(self.queue.count_pending())
        return job_id

    async def send_bulk_emails(
        self,
        items: Iterable[BulkItem | Mapping[str, Any]],
        options: BulkOptions | Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Queue many messages in fixed-size batches.

        The submission is split into chunks of ``batch_size``. Between chunks,
        never after the last one, the core waits ``delay_between_batches``
        milliseconds. With ``suppress_duplicates``, a message whose
        (user, sorted recipients, subject) key was already seen anywhere in
        this submission is skipped.

        Returns:
            Ids of the jobs created, in submission order.

        Raises:
            pydantic.ValidationError: If an item or the options are malformed.
        """
        entries = [item if isinstance(item, BulkItem) else BulkItem.model_validate(item) for item in items]
        if not isinstance(options, BulkOptions):
            options = BulkOptions.model_validate(options or {})
        enqueue_options = options.enqueue_options()

        batches = [entries[i:i + options.batch_size] for i in range(0, len(entries), options.batch_size)]
        seen: set[str] = set()
        job_ids: list[str] = []
        for index, batch in enumerate(batches):
            for entry in batch:
                if options.suppress_duplicates:
                    key = entry.payload.dedup_key(entry.user_id)
                    if key in seen:
                        continue
                    seen.add(key)
                job_ids.append(self.queue.add_to_queue(entry.payload, entry.user_id, enqueue_options))
            if index < len(batches) - 1 and options.delay_between_batches > 0:
                await self._sleep(options.delay_between_batches / 1000)

        self.metrics.set_pending(self.queue.count_pending())
        self.logger.info("Queued %d bulk emails in %d batches", len(job_ids), len(batches))
        return job_ids

    async def send_email_direct(
        self,
        payload: EmailPayload | Mapping[str, Any],
        user_id: int,
        provider_id: str = AUTO_PROVIDER,
    ) -> SendResult:
        """Send immediately, bypassing the queue.

        Raises:
            NoProviderAvailableError: No provider is eligible.
            pydantic.ValidationError: If ``payload`` is malformed.
        """
        if not isinstance(payload, EmailPayload):
            payload = EmailPayload.model_validate(payload)
        return await self.sender.send(payload, user_id, provider_id)

    # ----------------------------------------------------------------- lifecycle
    @property
    def active(self) -> bool:
        return self.processor.is_running

    async def start(self) -> None:
        """Start the processor (when active) and the maintenance loops."""
        self.logger.debug("Starting MailDispatchCore...")
        self._stop.clear()
        if self._start_active:
            self.processor.start()
        if self._health_check_interval > 0:
            self._task_health = asyncio.create_task(self._health_check_loop(), name="provider-health-loop")
        self._task_daily_reset = asyncio.create_task(self._daily_reset_loop(), name="daily-reset-loop")

    async def stop(self) -> None:
        """Stop the maintenance loops and drain the processor."""
        self._stop.set()
        await self.processor.shutdown()
        tasks = [task for task in (self._task_health, self._task_daily_reset) if task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task_health = None
        self._task_daily_reset = None
        await self._close_transports()

    def _smtp_pools(self) -> list[SMTPPool]:
        pools = {
            id(provider.pool): provider.pool
            for provider in self.registry.providers.values()
            if isinstance(provider, SMTPProvider)
        }
        return list(pools.values())

    async def _close_transports(self) -> None:
        for pool in self._smtp_pools():
            await pool.close_all()

    # -------------------------------------------------------------- maintenance
    async def _health_check_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.registry.perform_health_checks()
                for pool in self._smtp_pools():
                    await pool.cleanup()
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in health check loop: %s", exc)
            await self._wait(self._health_check_interval)

    async def _daily_reset_loop(self) -> None:
        while not self._stop.is_set():
            await self._wait(DAILY_RESET_CHECK_INTERVAL)
            if self._stop.is_set():
                return
            self.reset_if_new_day()

    def reset_if_new_day(self) -> bool:
        """Reset provider counters when the UTC date moved past the last reset."""
        today = utc_now().date()
        stale = any(config.last_reset_date < today for config in self.registry.configs.values())
        if stale:
            self.registry.reset_daily_counters()
        return stale

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
