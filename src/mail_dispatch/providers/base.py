# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider adapter contract and shared bookkeeping.

Every outbound transport derives from :class:`BaseEmailProvider`. The base
class owns the parts of a send attempt that do not depend on the transport:

- local validation of the message before anything leaves the process
- classification of transport failures as retryable or permanent
- rolling statistics (success rate, latency window, recent-error ring)
- health checks built on the adapter's ``verify()``

Concrete adapters only implement ``_transmit()``, ``verify()`` and
``get_limits()``. HTTP API adapters derive from :class:`HttpEmailProvider`,
which wraps an ``aiohttp`` request with a per-call timeout.

Example:
    Sending through an adapter::

        provider = SendGridProvider(api_key="SG.xxx")
        result = await provider.send(payload)
        if not result.success and result.error.retryable:
            ...  # try again later
"""

from __future__ import annotations

import asyncio
import base64
import json
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import aiohttp

from ..logger import get_logger
from ..models import (
    RESPONSE_TIME_WINDOW,
    EmailPayload,
    HealthCheckResult,
    HealthStatus,
    ProviderError,
    ProviderLimits,
    ProviderStatistics,
    SendError,
    SendResult,
    utc_now,
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_HTTP_TIMEOUT = 30.0


class MessageValidationError(ValueError):
    """Raised when a message is rejected before reaching the transport."""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "VALIDATION_ERROR"


class TransportError(Exception):
    """Failure reported by a transport, already classified.

    Attributes:
        code: Short machine-readable code (``HTTP_503``, ``SMTP_550`` ...).
        retryable: Whether the same message may succeed on a later attempt.
        status: HTTP status or SMTP reply code, when there is one.
    """

    def __init__(self, code: str, message: str, *, retryable: bool, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.status = status


def is_retryable_status(status: int | None) -> bool:
    """Classify an HTTP status: no status (network), 5xx and 429 are retryable."""
    if status is None:
        return True
    if status >= 500:
        return True
    if status == 429:
        return True
    return False


def is_valid_address(address: str | None) -> bool:
    """Basic ``local@domain.tld`` syntactic check."""
    return bool(address) and EMAIL_PATTERN.match(address) is not None


class BaseEmailProvider(ABC):
    """Common behaviour of every outbound email transport.

    Attributes:
        id: Stable provider identifier used by the registry.
        name: Human-readable provider name.
        statistics: Rolling statistics updated after every attempt.
        logger: Logger named after the adapter class.
    """

    id: str = "base"
    name: str = "Base provider"

    def __init__(self) -> None:
        self.statistics = ProviderStatistics()
        self._response_times: deque[float] = deque(maxlen=RESPONSE_TIME_WINDOW)
        self.logger = get_logger(type(self).__name__)

    # ------------------------------------------------------------ to implement
    @abstractmethod
    async def _transmit(self, payload: EmailPayload) -> tuple[str | None, dict[str, Any]]:
        """Hand the message to the transport.

        Returns:
            Tuple of (provider message id, response metadata).

        Raises:
            TransportError: The transport answered with a failure.
            aiohttp.ClientError, asyncio.TimeoutError, OSError: Network failure.
        """

    @abstractmethod
    async def verify(self) -> bool:
        """Lightweight reachability/credential check."""

    @abstractmethod
    def get_limits(self) -> ProviderLimits:
        """Static per-provider sending ceilings."""

    # ------------------------------------------------------------------- send
    async def send(self, payload: EmailPayload) -> SendResult:
        """Validate and transmit ``payload``, recording the outcome.

        Validation failures and classified transport failures come back as a
        failed :class:`SendResult`. Any other exception is recorded in the
        statistics and re-raised for the caller's failover logic.
        """
        started = time.monotonic()
        try:
            self.validate_message(payload)
        except MessageValidationError as exc:
            return self._failure(exc.code, str(exc), retryable=False, started=started)

        try:
            message_id, metadata = await self._transmit(payload)
        except TransportError as exc:
            metadata = {"status_code": exc.status} if exc.status is not None else {}
            return self._failure(exc.code, str(exc), retryable=exc.retryable, started=started, metadata=metadata)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            message = str(exc) or type(exc).__name__
            return self._failure("NETWORK_ERROR", message, retryable=True, started=started)
        except Exception as exc:
            self.record_error("UNEXPECTED_ERROR", str(exc), retryable=False)
            raise

        latency = time.monotonic() - started
        self.record_success(latency)
        return SendResult(
            success=True,
            provider_id=self.id,
            latency=latency,
            message_id=message_id,
            metadata={**metadata, "response_time": latency},
        )

    def _failure(
        self,
        code: str,
        message: str,
        *,
        retryable: bool,
        started: float,
        metadata: dict[str, Any] | None = None,
    ) -> SendResult:
        latency = time.monotonic() - started
        self.record_error(code, message, retryable=retryable)
        self.logger.debug("%s send failed (%s, retryable=%s): %s", self.id, code, retryable, message)
        return SendResult(
            success=False,
            provider_id=self.id,
            latency=latency,
            metadata={**(metadata or {}), "response_time": latency},
            error=SendError(code=code, message=message, retryable=retryable),
        )

    # ------------------------------------------------------------- validation
    def validate_message(self, payload: EmailPayload) -> None:
        """Reject messages that must never be handed to a transport.

        Raises:
            MessageValidationError: On the first problem found.
        """
        if not payload.to:
            raise MessageValidationError("No recipients specified")
        if not payload.subject or not payload.subject.strip():
            raise MessageValidationError("Subject is required")
        if not payload.html and not payload.text:
            raise MessageValidationError("Email content (HTML or text) is required")
        if not payload.from_addr:
            raise MessageValidationError("From address is required")

        for label, addresses in (("recipient", payload.to), ("CC", payload.cc), ("BCC", payload.bcc)):
            for address in addresses or []:
                if not is_valid_address(address):
                    raise MessageValidationError(f"Invalid {label} email: {address}")
        if not is_valid_address(payload.from_addr):
            raise MessageValidationError(f"Invalid from email: {payload.from_addr}")
        for att in payload.attachments or []:
            try:
                base64.b64decode(att.content, validate=True)
            except ValueError:
                raise MessageValidationError(f"Invalid attachment content: {att.filename}") from None

    # ------------------------------------------------------------- statistics
    def record_success(self, response_time: float) -> None:
        stats = self.statistics
        stats.total_sent += 1
        stats.daily_sent += 1
        stats.last_used = utc_now()
        self._response_times.append(response_time)
        stats.average_response_time = sum(self._response_times) / len(self._response_times)
        self._update_success_rate()

    def record_error(self, code: str, message: str, *, retryable: bool) -> None:
        stats = self.statistics
        stats.errors_total += 1
        stats.recent_errors.append(
            ProviderError(timestamp=utc_now(), code=code, message=message, retryable=retryable)
        )
        self._update_success_rate()

    def _update_success_rate(self) -> None:
        stats = self.statistics
        attempts = stats.total_sent + stats.errors_total
        if attempts:
            stats.success_rate = stats.total_sent / attempts * 100

    def get_statistics(self) -> dict[str, Any]:
        """Snapshot of the rolling statistics."""
        return self.statistics.to_dict()

    def reset_daily_counters(self) -> None:
        self.statistics.daily_sent = 0

    def is_limit_reached(self) -> bool:
        limit = self.get_limits().daily_limit
        return bool(limit) and self.statistics.daily_sent >= limit

    def get_remaining_capacity(self) -> int | None:
        """Sends left today, or ``None`` when the provider is unlimited."""
        limit = self.get_limits().daily_limit
        if not limit:
            return None
        return max(0, limit - self.statistics.daily_sent)

    # ----------------------------------------------------------------- health
    async def health_check(self) -> HealthCheckResult:
        """Time ``verify()`` and map its outcome to a health status.

        ``True`` maps to healthy, ``False`` to degraded, an exception to down.
        """
        started = time.monotonic()
        try:
            healthy = await self.verify()
        except Exception as exc:
            return HealthCheckResult(
                provider_id=self.id,
                status=HealthStatus.DOWN,
                response_time=time.monotonic() - started,
                last_checked=utc_now(),
                error_message=str(exc) or type(exc).__name__,
            )
        return HealthCheckResult(
            provider_id=self.id,
            status=HealthStatus.HEALTHY if healthy else HealthStatus.DEGRADED,
            response_time=time.monotonic() - started,
            last_checked=utc_now(),
        )


@dataclass
class HttpReply:
    """Buffered HTTP response returned by :meth:`HttpEmailProvider._request`."""

    status: int
    headers: Mapping[str, str]
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> dict[str, Any]:
        """Decode the body as a JSON object, ``{}`` when it is not one."""
        try:
            data = json.loads(self.text) if self.text else {}
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class HttpEmailProvider(BaseEmailProvider):
    """Base class for adapters talking to an HTTP email API."""

    def __init__(self, *, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        super().__init__()
        self.timeout = timeout

    async def _request(self, method: str, url: str, **kwargs: Any) -> HttpReply:
        """Perform one HTTP request and buffer the response.

        Raises:
            aiohttp.ClientError: If the request cannot be completed.
            asyncio.TimeoutError: If ``timeout`` elapses.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url, **kwargs) as resp:
                text = await resp.text()
                return HttpReply(status=resp.status, headers=resp.headers, text=text)

    def _raise_for_reply(self, reply: HttpReply, message: str) -> None:
        """Turn a non-2xx reply into a classified :class:`TransportError`."""
        if reply.ok:
            return
        raise TransportError(
            f"HTTP_{reply.status}",
            message,
            retryable=is_retryable_status(reply.status),
            status=reply.status,
        )
