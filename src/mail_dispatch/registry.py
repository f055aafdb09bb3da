# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider registry: configured adapters, availability and selection.

The registry pairs every adapter with its :class:`ProviderConfig` (priority,
daily counter, health) and answers one question per send attempt: which
adapter should carry this message?

Selection order:
    1. An explicitly requested provider, if registered and available.
    2. The user's own transport, resolved through an optional callable.
    3. The active, available, registered provider with the lowest
       ``priority`` value. Equal priorities keep registration order.

Example:
    Registering two providers and picking one::

        registry = ProviderRegistry()
        registry.add_provider(primary, ProviderConfig(id="sendgrid", name="SendGrid", priority=1))
        registry.add_provider(backup, ProviderConfig(id="mailgun", name="Mailgun", priority=2))

        provider = await registry.select_provider("auto", user_id=42)
        fallback = await registry.select_fallback_provider(provider.id, user_id=42)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from .logger import get_logger
from .models import AUTO_PROVIDER, HealthCheckResult, HealthStatus, ProviderConfig, utc_now
from .providers.base import BaseEmailProvider

UserProviderResolver = Callable[[int], Awaitable[BaseEmailProvider | None]]


async def _no_user_provider(user_id: int) -> BaseEmailProvider | None:
    return None


class ProviderRegistry:
    """Owns the configured adapters and chooses one per send attempt.

    Attributes:
        providers: Adapters keyed by provider id, in registration order.
        configs: Provider configuration and live state keyed by provider id.
        logger: Logger instance for diagnostic output.
    """

    def __init__(self, *, user_provider_resolver: UserProviderResolver | None = None, logger=None):
        """Create an empty registry.

        Args:
            user_provider_resolver: Async callable returning a user-specific
                transport or ``None``. Defaults to never overriding.
            logger: Custom logger instance.
        """
        self.providers: dict[str, BaseEmailProvider] = {}
        self.configs: dict[str, ProviderConfig] = {}
        self._user_provider_resolver = user_provider_resolver or _no_user_provider
        self.logger = logger or get_logger("ProviderRegistry")

    def __len__(self) -> int:
        return len(self.providers)

    # ------------------------------------------------------------ membership
    def add_provider(self, provider: BaseEmailProvider, config: ProviderConfig) -> None:
        """Register or replace an adapter with its configuration."""
        if provider.id != config.id:
            raise ValueError(f"Provider id {provider.id!r} does not match config id {config.id!r}")
        self.providers[provider.id] = provider
        self.configs[config.id] = config
        self.logger.info("Email provider added: %s (%s)", config.name, config.id)

    def remove_provider(self, provider_id: str) -> bool:
        """Unregister a provider. Returns False if it was not registered."""
        removed = self.providers.pop(provider_id, None) is not None
        removed = self.configs.pop(provider_id, None) is not None and removed
        if removed:
            self.logger.info("Email provider removed: %s", provider_id)
        return removed

    def get_provider(self, provider_id: str) -> BaseEmailProvider | None:
        return self.providers.get(provider_id)

    def get_config(self, provider_id: str) -> ProviderConfig | None:
        return self.configs.get(provider_id)

    def is_provider_available(self, provider_id: str) -> bool:
        """Known, under its daily limit and not marked down."""
        config = self.configs.get(provider_id)
        return config is not None and config.is_available

    # ------------------------------------------------------------- selection
    def _candidates(self, exclude: str | None = None) -> list[BaseEmailProvider]:
        eligible = [
            config
            for config in self.configs.values()
            if config.id != exclude
            and config.is_active
            and config.is_available
            and config.id in self.providers
        ]
        # sorted() is stable: equal priorities keep registration order.
        eligible.sort(key=lambda config: config.priority)
        return [self.providers[config.id] for config in eligible]

    async def select_provider(self, requested_id: str, user_id: int) -> BaseEmailProvider | None:
        """Pick the adapter for a send attempt, or ``None`` if none is eligible."""
        if requested_id and requested_id != AUTO_PROVIDER:
            provider = self.providers.get(requested_id)
            if provider is not None and self.is_provider_available(requested_id):
                return provider
            self.logger.debug("Requested provider %s unavailable, selecting automatically", requested_id)

        user_provider = await self._user_provider_resolver(user_id)
        if user_provider is not None and self.is_provider_available(user_provider.id):
            return user_provider

        candidates = self._candidates()
        return candidates[0] if candidates else None

    async def select_fallback_provider(self, failed_id: str, user_id: int) -> BaseEmailProvider | None:
        """Best eligible adapter other than ``failed_id``."""
        candidates = self._candidates(exclude=failed_id)
        return candidates[0] if candidates else None

    # ---------------------------------------------------------- bookkeeping
    def record_success(self, provider_id: str) -> None:
        """Count a delivered message against the provider's daily limit."""
        config = self.configs.get(provider_id)
        if config is None:
            return
        config.daily_sent += 1
        config.health_status = HealthStatus.HEALTHY
        config.last_health_check = utc_now()

    async def perform_health_checks(self) -> list[HealthCheckResult]:
        """Run every adapter's health check and store the outcome in its config."""
        self.logger.debug("Performing email provider health checks")
        results: list[HealthCheckResult] = []
        for provider_id, provider in list(self.providers.items()):
            config = self.configs.get(provider_id)
            try:
                result = await provider.health_check()
            except Exception as exc:
                self.logger.error("Health check failed for %s: %s", provider.name, exc)
                result = HealthCheckResult(
                    provider_id=provider_id,
                    status=HealthStatus.DOWN,
                    response_time=0.0,
                    last_checked=utc_now(),
                    error_message=str(exc),
                )
            if config is not None:
                config.health_status = result.status
                config.last_health_check = result.last_checked
            self.logger.info("%s: %s (%.0fms)", provider.name, result.status.value, result.response_time * 1000)
            results.append(result)
        return results

    def reset_daily_counters(self) -> None:
        """Zero every daily counter; meant to run once per day."""
        today = utc_now().date()
        for config in self.configs.values():
            config.daily_sent = 0
            config.last_reset_date = today
        for provider in self.providers.values():
            provider.reset_daily_counters()
        self.logger.info("Daily counters reset for all email providers")

    def get_providers_status(self) -> list[dict[str, Any]]:
        """Status summary of every configured provider."""
        status = []
        for provider_id, config in self.configs.items():
            provider = self.providers.get(provider_id)
            status.append(
                {
                    "id": config.id,
                    "name": config.name,
                    "type": config.type,
                    "is_active": config.is_active,
                    "priority": config.priority,
                    "health_status": config.health_status.value,
                    "last_health_check": config.last_health_check.isoformat(),
                    "daily_sent": config.daily_sent,
                    "daily_limit": config.daily_limit,
                    "last_reset_date": config.last_reset_date.isoformat(),
                    "available": config.is_available,
                    "remaining_capacity": provider.get_remaining_capacity() if provider else None,
                    "limit_reached": provider.is_limit_reached() if provider else False,
                    "statistics": provider.get_statistics() if provider else None,
                }
            )
        return status
