"""Shared test doubles for the mail dispatch test suite."""

import types
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from mail_dispatch.models import EmailPayload, ProviderLimits
from mail_dispatch.providers.base import BaseEmailProvider, TransportError

START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock whose current time is set by the test."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubProvider(BaseEmailProvider):
    """Adapter whose transport outcome is scripted by the test.

    ``outcomes`` is consumed one entry per transmit: ``None`` means success,
    an exception instance is raised. When the script is exhausted the last
    entry repeats.
    """

    def __init__(self, provider_id: str, outcomes: List[Any] | None = None, *, healthy: Any = True):
        super().__init__()
        self.id = provider_id
        self.name = provider_id.upper()
        self.outcomes = list(outcomes or [None])
        self.healthy = healthy
        self.calls: List[EmailPayload] = []

    async def _transmit(self, payload):
        self.calls.append(payload)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return f"{self.id}-msg-{len(self.calls)}", {"status_code": 202}

    async def verify(self) -> bool:
        if isinstance(self.healthy, BaseException):
            raise self.healthy
        return self.healthy

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(daily_limit=1000)


def retryable_error(status: int = 503) -> TransportError:
    return TransportError(f"HTTP_{status}", "Service Unavailable", retryable=True, status=status)


def permanent_error(status: int = 400) -> TransportError:
    return TransportError(f"HTTP_{status}", "Bad Request", retryable=False, status=status)


def make_payload(**overrides) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "from": "sender@example.com",
        "to": ["dest@example.com"],
        "subject": "Hello",
        "text": "Body",
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )
