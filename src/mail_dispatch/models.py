# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models for the mail dispatch service.

Payloads that cross the HTTP boundary are pydantic models so they are
validated on the way in. Records owned by the queue and the provider registry
are plain dataclasses, mutated in place by the component that owns them.

Models:
    - EmailPayload: The message to deliver (recipients, bodies, tracking).
    - EnqueueOptions / BulkOptions: Caller options for queue submission.
    - SendJob: One queued delivery, owned by the queue store.
    - ProviderConfig: Registry-side state of one configured transport.
    - SendResult / SendError: Outcome of a single provider attempt.
    - ProviderStatistics / ProviderLimits / HealthCheckResult: Adapter
      bookkeeping exposed for monitoring.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

AUTO_PROVIDER = "auto"
DEFAULT_MAX_RETRIES = 3
MAX_RECENT_ERRORS = 10
RESPONSE_TIME_WINDOW = 100


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


class Priority(str, Enum):
    """Queue priority of a send job. ``HIGH`` is dispatched first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER[self]


PRIORITY_ORDER = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class JobStatus(str, Enum):
    """Lifecycle states of a send job."""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED})


class HealthStatus(str, Enum):
    """Health of an outbound provider as seen by the registry."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


# --------------------------------------------------------------------- payloads
class AttachmentPayload(BaseModel):
    """Attachment carried inline with the message (base64 content)."""

    model_config = ConfigDict(extra="forbid")

    filename: Annotated[str, Field(min_length=1, description="File name shown to the recipient")]
    content: Annotated[str, Field(description="Base64-encoded file content")]
    content_type: Annotated[
        str,
        Field(default="application/octet-stream", description="MIME type of the attachment")
    ]
    disposition: Annotated[
        Literal["attachment", "inline"],
        Field(default="attachment", description="Content disposition")
    ]
    content_id: Annotated[
        str | None,
        Field(default=None, description="Content-ID for inline attachments")
    ]


class EmailPayload(BaseModel):
    """Message to deliver.

    The model is intentionally lenient: structural problems such as an empty
    recipient list or a blank subject are reported by the provider adapter
    as non-retryable validation failures, never at enqueue time.
    """

    model_config = ConfigDict(populate_by_name=True)

    to: list[str] = Field(default_factory=list)
    cc: list[str] | None = None
    bcc: list[str] | None = None
    from_addr: str | None = Field(default=None, alias="from")
    from_name: str | None = None
    subject: str = ""
    html: str | None = None
    text: str | None = None
    attachments: list[AttachmentPayload] | None = None
    track_opens: bool | None = None
    track_clicks: bool | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def dedup_key(self, user_id: int) -> str:
        """Composite key used to suppress duplicates within a bulk submission."""
        recipients = ",".join(sorted(self.to))
        return f"{user_id}:{recipients}:{self.subject}"


class EnqueueOptions(BaseModel):
    """Options recognised when a message is added to the queue."""

    model_config = ConfigDict(extra="forbid")

    priority: Priority = Priority.NORMAL
    scheduled_at: datetime | None = None
    track_opens: bool | None = None
    track_clicks: bool | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider_id: str = AUTO_PROVIDER

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_is_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are interpreted as UTC."""
        return _as_utc(v)


class BulkOptions(EnqueueOptions):
    """Options for a bulk submission: batching plus per-job enqueue options."""

    batch_size: Annotated[int, Field(default=50, ge=1, description="Jobs enqueued per batch")]
    delay_between_batches: Annotated[
        int,
        Field(default=1000, ge=0, description="Pause between batches in milliseconds")
    ]
    suppress_duplicates: Annotated[
        bool,
        Field(default=True, description="Skip repeats of (user, recipients, subject)")
    ]

    def enqueue_options(self) -> EnqueueOptions:
        """Return only the per-job portion of these options."""
        return EnqueueOptions(**self.model_dump(include=set(EnqueueOptions.model_fields)))


class BulkItem(BaseModel):
    """One entry of a bulk submission."""

    payload: EmailPayload
    user_id: int


# ---------------------------------------------------------------------- records
@dataclass
class SendJob:
    """One requested email delivery, owned by :class:`~mail_dispatch.queue.EmailQueue`."""

    id: str
    user_id: int
    payload: EmailPayload
    priority: Priority
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    provider_id: str = AUTO_PROVIDER
    sent_at: datetime | None = None
    error_message: str | None = None
    sent_via: str | None = None
    message_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready snapshot of the job."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "scheduled_at": _iso(self.scheduled_at),
            "sent_at": _iso(self.sent_at),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "provider_id": self.provider_id,
            "sent_via": self.sent_via,
            "message_id": self.message_id,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "subject": self.payload.subject,
            "to": list(self.payload.to),
        }


@dataclass
class ProviderConfig:
    """Registry-side configuration and live state of one provider."""

    id: str
    name: str
    type: str = "custom"
    is_active: bool = True
    priority: int = 1
    config: dict[str, Any] = field(default_factory=dict)
    daily_limit: int | None = None
    daily_sent: int = 0
    last_reset_date: date = field(default_factory=lambda: utc_now().date())
    health_status: HealthStatus = HealthStatus.HEALTHY
    last_health_check: datetime = field(default_factory=utc_now)

    @property
    def is_available(self) -> bool:
        """Not over the daily limit and not marked down."""
        if self.daily_limit and self.daily_sent >= self.daily_limit:
            return False
        return self.health_status is not HealthStatus.DOWN


@dataclass
class SendError:
    """Failure details of a send attempt."""

    code: str
    message: str
    retryable: bool

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass
class SendResult:
    """Outcome of one provider send attempt."""

    success: bool
    provider_id: str
    timestamp: datetime = field(default_factory=utc_now)
    latency: float = 0.0
    message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: SendError | None = None

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "provider_id": self.provider_id,
            "message_id": self.message_id,
            "timestamp": _iso(self.timestamp),
            "latency": self.latency,
            "metadata": dict(self.metadata),
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ProviderError:
    """Entry of a provider's recent-error ring buffer."""

    timestamp: datetime
    code: str
    message: str
    retryable: bool


@dataclass
class ProviderStatistics:
    """Rolling per-provider send statistics."""

    total_sent: int = 0
    success_rate: float = 100.0
    average_response_time: float = 0.0
    last_used: datetime | None = None
    daily_sent: int = 0
    errors_total: int = 0
    recent_errors: deque[ProviderError] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS)
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sent": self.total_sent,
            "success_rate": self.success_rate,
            "average_response_time": self.average_response_time,
            "last_used": _iso(self.last_used),
            "daily_sent": self.daily_sent,
            "errors": {
                "total": self.errors_total,
                "recent": [
                    {
                        "timestamp": _iso(err.timestamp),
                        "code": err.code,
                        "message": err.message,
                        "retryable": err.retryable,
                    }
                    for err in self.recent_errors
                ],
            },
        }


@dataclass(frozen=True)
class ProviderLimits:
    """Static sending ceilings of a provider (sizes in bytes)."""

    daily_limit: int | None = None
    hourly_limit: int | None = None
    per_second_limit: int | None = None
    max_recipients: int | None = None
    max_attachment_size: int | None = None
    max_email_size: int | None = None


@dataclass
class HealthCheckResult:
    """Result of :meth:`BaseEmailProvider.health_check`."""

    provider_id: str
    status: HealthStatus
    response_time: float
    last_checked: datetime
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "status": self.status.value,
            "response_time": self.response_time,
            "last_checked": _iso(self.last_checked),
            "error_message": self.error_message,
        }
