# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""The "can send a message" capability consumed by the queue processor.

The processor depends only on :class:`MessageSender`. The concrete
:class:`ProviderSender` implements it on top of a
:class:`~mail_dispatch.registry.ProviderRegistry`, adding one immediate
failover when the selected provider fails permanently or raises.
"""

from __future__ import annotations

from typing import Protocol

from .logger import get_logger
from .models import AUTO_PROVIDER, EmailPayload, SendResult
from .prometheus import MailMetrics
from .providers.base import BaseEmailProvider
from .registry import ProviderRegistry


class NoProviderAvailableError(RuntimeError):
    """Raised when no registered provider is eligible for a send attempt.

    The condition is transient (a daily limit resets, a provider recovers),
    so the queue treats it as a retryable failure.
    """

    def __init__(self, message: str = "No available email provider"):
        super().__init__(message)
        self.code = "no_available_provider"
        self.retryable = True


class MessageSender(Protocol):
    """Anything able to deliver one message on behalf of a user."""

    async def send(self, payload: EmailPayload, user_id: int, provider_id: str = AUTO_PROVIDER) -> SendResult:
        ...


class ProviderSender:
    """Registry-backed sender with single-step failover.

    Attributes:
        registry: Provider registry used for selection and bookkeeping.
        metrics: Prometheus collector; failovers are counted here.
        logger: Logger instance for diagnostic output.
    """

    def __init__(self, registry: ProviderRegistry, *, metrics: MailMetrics | None = None, logger=None):
        self.registry = registry
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger("ProviderSender")

    async def send(self, payload: EmailPayload, user_id: int, provider_id: str = AUTO_PROVIDER) -> SendResult:
        """Deliver ``payload`` through the best provider, failing over once.

        A successful send is counted against the daily limit of the provider
        that actually delivered it, fallback included.

        Raises:
            NoProviderAvailableError: No provider is eligible.
            Exception: Whatever the provider raised, when no fallback exists
                or when the fallback raises as well.
        """
        provider = await self.registry.select_provider(provider_id, user_id)
        if provider is None:
            raise NoProviderAvailableError()

        try:
            result = await provider.send(payload)
        except Exception as exc:
            fallback = await self.registry.select_fallback_provider(provider.id, user_id)
            if fallback is None:
                raise
            self.logger.warning("Provider %s raised (%s), failing over to %s", provider.id, exc, fallback.id)
            self.metrics.inc_failover(provider.id)
            return await self._send_via(fallback, payload)

        if result.success:
            self.registry.record_success(provider.id)
            return result
        if result.retryable:
            return result

        fallback = await self.registry.select_fallback_provider(provider.id, user_id)
        if fallback is None:
            return result
        self.logger.warning(
            "Provider %s failed permanently (%s), failing over to %s",
            provider.id,
            result.error.code if result.error else "unknown",
            fallback.id,
        )
        self.metrics.inc_failover(provider.id)
        return await self._send_via(fallback, payload)

    async def _send_via(self, provider: BaseEmailProvider, payload: EmailPayload) -> SendResult:
        result = await provider.send(payload)
        if result.success:
            self.registry.record_success(provider.id)
        return result
