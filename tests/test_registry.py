from datetime import date

import pytest

from conftest import StubProvider
from mail_dispatch.models import HealthStatus, ProviderConfig
from mail_dispatch.registry import ProviderRegistry


def make_registry(quiet_logger, resolver=None) -> ProviderRegistry:
    return ProviderRegistry(user_provider_resolver=resolver, logger=quiet_logger)


def register(registry, provider_id, priority=1, **config):
    provider = StubProvider(provider_id)
    registry.add_provider(provider, ProviderConfig(id=provider_id, name=provider_id, priority=priority, **config))
    return provider


def test_add_provider_requires_matching_ids(quiet_logger):
    registry = make_registry(quiet_logger)
    with pytest.raises(ValueError):
        registry.add_provider(StubProvider("a"), ProviderConfig(id="b", name="B"))


def test_remove_provider(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "a")

    assert registry.remove_provider("a") is True
    assert registry.get_provider("a") is None
    assert registry.remove_provider("a") is False


def test_availability_depends_on_limit_and_health(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "limited", daily_limit=2, daily_sent=2)
    register(registry, "down", health_status=HealthStatus.DOWN)
    register(registry, "degraded", health_status=HealthStatus.DEGRADED)
    register(registry, "unlimited", daily_sent=10_000)

    assert registry.is_provider_available("limited") is False
    assert registry.is_provider_available("down") is False
    assert registry.is_provider_available("degraded") is True
    assert registry.is_provider_available("unlimited") is True
    assert registry.is_provider_available("unknown") is False


@pytest.mark.asyncio
async def test_select_provider_prefers_lowest_priority(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "backup", priority=2)
    register(registry, "primary", priority=1)

    selected = await registry.select_provider("auto", 1)

    assert selected.id == "primary"


@pytest.mark.asyncio
async def test_equal_priorities_keep_registration_order(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "first", priority=1)
    register(registry, "second", priority=1)

    assert (await registry.select_provider("auto", 1)).id == "first"
    assert (await registry.select_fallback_provider("first", 1)).id == "second"


@pytest.mark.asyncio
async def test_explicit_provider_wins_when_available(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "primary", priority=1)
    register(registry, "special", priority=5)

    assert (await registry.select_provider("special", 1)).id == "special"


@pytest.mark.asyncio
async def test_unavailable_explicit_provider_falls_back_to_auto(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "primary", priority=1)
    register(registry, "special", priority=5, health_status=HealthStatus.DOWN)

    assert (await registry.select_provider("special", 1)).id == "primary"
    assert (await registry.select_provider("missing", 1)).id == "primary"


@pytest.mark.asyncio
async def test_explicit_inactive_provider_is_still_honoured(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "primary", priority=1)
    register(registry, "paused", priority=2, is_active=False)

    assert (await registry.select_provider("paused", 1)).id == "paused"
    assert (await registry.select_fallback_provider("primary", 1)) is None


@pytest.mark.asyncio
async def test_user_provider_override(quiet_logger):
    calls = []
    user_transport = StubProvider("user-smtp")

    async def resolver(user_id):
        calls.append(user_id)
        return user_transport if user_id == 42 else None

    registry = make_registry(quiet_logger, resolver)
    register(registry, "primary")
    registry.configs["user-smtp"] = ProviderConfig(id="user-smtp", name="User SMTP", priority=9)

    assert (await registry.select_provider("auto", 42)).id == "user-smtp"
    assert (await registry.select_provider("auto", 7)).id == "primary"
    assert calls == [42, 7]


@pytest.mark.asyncio
async def test_select_provider_none_when_nothing_eligible(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "full", daily_limit=1, daily_sent=1)
    register(registry, "off", is_active=False)
    registry.configs["orphan"] = ProviderConfig(id="orphan", name="Orphan")

    assert await registry.select_provider("auto", 1) is None


@pytest.mark.asyncio
async def test_fallback_excludes_failed_provider(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "p1", priority=1)
    register(registry, "p2", priority=2)
    register(registry, "p3", priority=3)

    assert (await registry.select_fallback_provider("p1", 1)).id == "p2"
    assert (await registry.select_fallback_provider("p2", 1)).id == "p1"


def test_record_success_counts_against_limit(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "p1", daily_limit=1, health_status=HealthStatus.DEGRADED)

    registry.record_success("p1")
    registry.record_success("unknown")

    config = registry.get_config("p1")
    assert config.daily_sent == 1
    assert config.health_status is HealthStatus.HEALTHY
    assert registry.is_provider_available("p1") is False


@pytest.mark.asyncio
async def test_health_checks_write_status_back(quiet_logger):
    registry = make_registry(quiet_logger)
    healthy = register(registry, "healthy")
    degraded = register(registry, "degraded")
    broken = register(registry, "broken")
    degraded.healthy = False
    broken.healthy = ConnectionError("unreachable")

    results = await registry.perform_health_checks()

    assert [result.status for result in results] == [
        HealthStatus.HEALTHY,
        HealthStatus.DEGRADED,
        HealthStatus.DOWN,
    ]
    assert registry.get_config("broken").health_status is HealthStatus.DOWN
    assert registry.get_config("broken").last_health_check == results[2].last_checked
    assert results[2].error_message == "unreachable"
    assert registry.is_provider_available("broken") is False
    assert healthy.statistics.total_sent == 0


def test_reset_daily_counters(quiet_logger):
    registry = make_registry(quiet_logger)
    provider = register(registry, "p1", daily_limit=5, daily_sent=5, last_reset_date=date(2020, 1, 1))
    provider.statistics.daily_sent = 5

    registry.reset_daily_counters()

    config = registry.get_config("p1")
    assert config.daily_sent == 0
    assert config.last_reset_date > date(2020, 1, 1)
    assert provider.statistics.daily_sent == 0
    assert registry.is_provider_available("p1") is True


def test_get_providers_status(quiet_logger):
    registry = make_registry(quiet_logger)
    register(registry, "p1", priority=2, daily_limit=100, daily_sent=3)

    [status] = registry.get_providers_status()

    assert status["id"] == "p1"
    assert status["priority"] == 2
    assert status["daily_sent"] == 3
    assert status["daily_limit"] == 100
    assert status["health_status"] == "healthy"
    assert status["available"] is True
    assert status["statistics"]["success_rate"] == 100.0
    assert status["remaining_capacity"] == 1000
    assert status["limit_reached"] is False
