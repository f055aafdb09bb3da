# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-process job table for queued email deliveries.

The queue lives in process memory: a restart loses every pending and
in-flight job. Jobs are created only through :meth:`EmailQueue.add_to_queue`
and mutated only by the processor tick and by :meth:`EmailQueue.cancel_email`.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, time, timedelta, timezone
from typing import Any

from .logger import get_logger
from .models import (
    DEFAULT_MAX_RETRIES,
    EmailPayload,
    EnqueueOptions,
    JobStatus,
    SendJob,
    utc_now,
)

DEFAULT_RETENTION_HOURS = 24

Clock = Callable[[], datetime]


def apply_options(payload: EmailPayload, options: EnqueueOptions) -> EmailPayload:
    """Return a copy of ``payload`` with tracking, tags and metadata options applied.

    Options that are set win over the payload; metadata maps are merged.
    """
    update: dict[str, Any] = {"metadata": {**payload.metadata, **options.metadata}}
    if options.track_opens is not None:
        update["track_opens"] = options.track_opens
    if options.track_clicks is not None:
        update["track_clicks"] = options.track_clicks
    if options.tags:
        update["tags"] = list(options.tags)
    return payload.model_copy(update=update, deep=True)


class EmailQueue:
    """Table of :class:`SendJob` records keyed by job id.

    Attributes:
        max_retries: Retry ceiling stamped on every new job.
        retention: How long terminal jobs are kept after their last update.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retention_hours: float = DEFAULT_RETENTION_HOURS,
        logger=None,
    ):
        """Create an empty queue.

        Args:
            clock: Callable returning the current UTC time. Tests inject a
                controllable clock here.
            max_retries: Retry ceiling stamped on every new job.
            retention_hours: Age after which terminal jobs are removed.
            logger: Custom logger instance.
        """
        self._jobs: dict[str, SendJob] = {}
        self._clock = clock or utc_now
        self.max_retries = max_retries
        self.retention = timedelta(hours=retention_hours)
        self.logger = logger or get_logger("EmailQueue")

    def __len__(self) -> int:
        return len(self._jobs)

    def now(self) -> datetime:
        return self._clock()

    def add_to_queue(
        self,
        payload: EmailPayload | Mapping[str, Any],
        user_id: int,
        options: EnqueueOptions | Mapping[str, Any] | None = None,
    ) -> str:
        """Create a pending job and return its id.

        Args:
            payload: Message to deliver; mappings are validated into
                :class:`EmailPayload`.
            user_id: Owner of the job.
            options: Enqueue options; mappings are validated into
                :class:`EnqueueOptions`.

        Raises:
            pydantic.ValidationError: If ``payload`` or ``options`` is malformed.
        """
        if not isinstance(payload, EmailPayload):
            payload = EmailPayload.model_validate(payload)
        if not isinstance(options, EnqueueOptions):
            options = EnqueueOptions.model_validate(options or {})

        now = self.now()
        job = SendJob(
            id=uuid.uuid4().hex,
            user_id=user_id,
            payload=apply_options(payload, options),
            priority=options.priority,
            scheduled_at=options.scheduled_at or now,
            created_at=now,
            updated_at=now,
            max_retries=self.max_retries,
            provider_id=options.provider_id,
        )
        self._jobs[job.id] = job
        self.logger.info("Email queued: %s for user %s", job.id, user_id)
        return job.id

    def get_queue_item(self, job_id: str) -> SendJob | None:
        return self._jobs.get(job_id)

    def get_user_queue_items(self, user_id: int) -> list[SendJob]:
        """Jobs owned by ``user_id``, in creation order."""
        return [job for job in self._jobs.values() if job.user_id == user_id]

    def all_items(self) -> list[SendJob]:
        return list(self._jobs.values())

    def cancel_email(self, job_id: str) -> bool:
        """Cancel a pending job. Any other status leaves the job untouched."""
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.PENDING:
            return False
        job.status = JobStatus.CANCELLED
        job.updated_at = self.now()
        self.logger.info("Email cancelled: %s", job_id)
        return True

    def get_due_items(self, now: datetime | None = None) -> list[SendJob]:
        """Pending jobs due at ``now``, highest priority first, then oldest schedule."""
        now = now or self.now()
        due = [
            job
            for job in self._jobs.values()
            if job.status is JobStatus.PENDING and job.scheduled_at <= now
        ]
        due.sort(key=lambda job: (job.priority.rank, job.scheduled_at))
        return due

    def count_pending(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.PENDING)

    def cleanup_old_items(self) -> int:
        """Remove terminal jobs not updated within the retention window."""
        cutoff = self.now() - self.retention
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.updated_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            self.logger.info("Cleaned up %d old queue items", len(expired))
        return len(expired)

    def get_queue_statistics(self) -> dict[str, Any]:
        """Aggregate counts, today's volume, mean delivery time and success rate.

        ``average_processing_time`` is the mean of ``sent_at - created_at`` in
        seconds over sent jobs. ``success_rate`` is the percentage of sent jobs
        among all jobs still in the table.
        """
        jobs = list(self._jobs.values())
        counts = {status: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status] += 1

        midnight = datetime.combine(self.now().date(), time.min, tzinfo=timezone.utc)
        sent = [job for job in jobs if job.status is JobStatus.SENT and job.sent_at]
        total_processing = sum((job.sent_at - job.created_at).total_seconds() for job in sent)

        return {
            "pending": counts[JobStatus.PENDING],
            "processing": counts[JobStatus.PROCESSING],
            "sent": counts[JobStatus.SENT],
            "failed": counts[JobStatus.FAILED],
            "cancelled": counts[JobStatus.CANCELLED],
            "total_today": sum(1 for job in jobs if job.created_at >= midnight),
            "average_processing_time": total_processing / len(sent) if sent else 0.0,
            "success_rate": counts[JobStatus.SENT] / len(jobs) * 100 if jobs else 0.0,
        }
