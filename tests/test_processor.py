import asyncio
from datetime import timedelta

import pytest

from conftest import StubProvider, make_payload, permanent_error, retryable_error
from mail_dispatch.models import JobStatus, ProviderConfig, SendResult
from mail_dispatch.processor import QueueProcessor, retry_delay
from mail_dispatch.prometheus import MailMetrics
from mail_dispatch.queue import EmailQueue
from mail_dispatch.registry import ProviderRegistry
from mail_dispatch.sender import ProviderSender


class RecordingSender:
    """Sender double: records calls and replays scripted results."""

    def __init__(self, outcome=None, delay: float = 0.0):
        self.calls = []
        self.outcome = outcome
        self.delay = delay

    async def send(self, payload, user_id, provider_id="auto"):
        self.calls.append((payload.subject, user_id, provider_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        if self.outcome is not None:
            return self.outcome
        return SendResult(success=True, provider_id="stub", message_id=f"m-{len(self.calls)}")


class DummyMetrics:
    def __init__(self):
        self.pending_value = None
        self.sent = []
        self.failed = []
        self.retried = []

    def set_pending(self, value):
        self.pending_value = value

    def inc_sent(self, provider_id):
        self.sent.append(provider_id)

    def inc_failed(self, provider_id):
        self.failed.append(provider_id)

    def inc_retried(self, provider_id):
        self.retried.append(provider_id)


def make_processor(clock, quiet_logger, sender, **kwargs):
    queue = EmailQueue(clock=clock, logger=quiet_logger)
    processor = QueueProcessor(queue, sender, metrics=DummyMetrics(), logger=quiet_logger, **kwargs)
    return queue, processor


def make_registry(quiet_logger, *providers):
    registry = ProviderRegistry(logger=quiet_logger)
    for priority, provider in enumerate(providers, start=1):
        registry.add_provider(provider, ProviderConfig(id=provider.id, name=provider.name, priority=priority))
    return registry


def test_retry_delay_is_base_three_minutes():
    assert retry_delay(1) == timedelta(minutes=3)
    assert retry_delay(2) == timedelta(minutes=9)
    assert retry_delay(3) == timedelta(minutes=27)


@pytest.mark.asyncio
async def test_tick_marks_job_sent(clock, quiet_logger):
    sender = RecordingSender()
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 5, {"provider_id": "sendgrid"})

    assert await processor.tick() == 1

    job = queue.get_queue_item(job_id)
    assert job.status is JobStatus.SENT
    assert job.sent_at == clock.now
    assert job.sent_via == "stub"
    assert job.message_id == "m-1"
    assert sender.calls == [("Hello", 5, "sendgrid")]
    assert processor.metrics.sent == ["stub"]
    assert processor.metrics.pending_value == 0


@pytest.mark.asyncio
async def test_failed_result_schedules_retry_with_backoff(clock, quiet_logger):
    failure = SendResult(
        success=False,
        provider_id="stub",
        error=None,
    )
    queue, processor = make_processor(clock, quiet_logger, RecordingSender(failure))
    job_id = queue.add_to_queue(make_payload(), 1)

    await processor.tick()

    job = queue.get_queue_item(job_id)
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error_message == "Unknown error"
    assert job.scheduled_at == clock.now + timedelta(minutes=3)
    assert processor.metrics.retried == ["stub"]


@pytest.mark.asyncio
async def test_job_not_retried_before_backoff_elapses(clock, quiet_logger):
    sender = RecordingSender(RuntimeError("boom"))
    queue, processor = make_processor(clock, quiet_logger, sender)
    queue.add_to_queue(make_payload(), 1)

    await processor.tick()
    clock.advance(minutes=2, seconds=59)
    assert await processor.tick() == 0
    clock.advance(seconds=1)
    assert await processor.tick() == 1
    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_retries_exhausted_marks_failed(clock, quiet_logger):
    queue, processor = make_processor(clock, quiet_logger, RecordingSender(RuntimeError("smtp down")))
    job_id = queue.add_to_queue(make_payload(), 1)
    job = queue.get_queue_item(job_id)
    schedules = []

    for expected_wait in (3, 9):
        await processor.tick()
        assert job.status is JobStatus.PENDING
        assert job.scheduled_at >= clock.now + timedelta(minutes=expected_wait)
        schedules.append(job.scheduled_at)
        clock.advance(minutes=expected_wait)

    await processor.tick()

    assert job.status is JobStatus.FAILED
    assert job.retry_count == job.max_retries == 3
    assert job.error_message == "smtp down"
    assert schedules == sorted(schedules)
    assert processor.metrics.failed == [None]

    clock.advance(hours=1)
    assert await processor.tick() == 0
    assert job.retry_count == 3


@pytest.mark.asyncio
async def test_tick_respects_priority_and_concurrency_bound(clock, quiet_logger):
    sender = RecordingSender()
    queue, processor = make_processor(clock, quiet_logger, sender, max_concurrent=3)
    for subject, priority in (("low", "low"), ("normal", "normal"), ("high-1", "high"), ("high-2", "high")):
        queue.add_to_queue(make_payload(subject=subject), 1, {"priority": priority})

    assert await processor.tick() == 3

    assert [call[0] for call in sender.calls] == ["high-1", "high-2", "normal"]
    pending = [job.payload.subject for job in queue.all_items() if job.status is JobStatus.PENDING]
    assert pending == ["low"]


@pytest.mark.asyncio
async def test_one_failing_job_does_not_abort_others(clock, quiet_logger):
    class FlakySender(RecordingSender):
        async def send(self, payload, user_id, provider_id="auto"):
            if payload.subject == "bad":
                raise ValueError("broken payload")
            return await super().send(payload, user_id, provider_id)

    queue, processor = make_processor(clock, quiet_logger, FlakySender())
    bad = queue.add_to_queue(make_payload(subject="bad"), 1)
    good = queue.add_to_queue(make_payload(subject="good"), 1)

    await processor.tick()

    assert queue.get_queue_item(bad).status is JobStatus.PENDING
    assert queue.get_queue_item(good).status is JobStatus.SENT


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(clock, quiet_logger):
    sender = RecordingSender(delay=0.05)
    queue, processor = make_processor(clock, quiet_logger, sender)
    queue.add_to_queue(make_payload(), 1)

    first = asyncio.create_task(processor.tick())
    await asyncio.sleep(0.01)
    assert processor.is_processing
    assert await processor.tick() == 0
    assert await first == 1
    assert len(sender.calls) == 1
    assert not processor.is_processing


@pytest.mark.asyncio
async def test_tick_runs_cleanup(clock, quiet_logger):
    queue, processor = make_processor(clock, quiet_logger, RecordingSender())
    old = queue.add_to_queue(make_payload(), 1)
    await processor.tick()
    clock.advance(hours=24, seconds=1)
    recent = queue.add_to_queue(make_payload(), 1)
    queue.cancel_email(recent)

    await processor.tick()

    assert queue.get_queue_item(old) is None
    assert queue.get_queue_item(recent) is not None


@pytest.mark.asyncio
async def test_cancel_during_processing_has_no_effect(clock, quiet_logger):
    sender = RecordingSender(delay=0.05)
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 1)

    tick = asyncio.create_task(processor.tick())
    await asyncio.sleep(0.01)
    assert queue.get_queue_item(job_id).status is JobStatus.PROCESSING
    assert queue.cancel_email(job_id) is False
    await tick

    assert queue.get_queue_item(job_id).status is JobStatus.SENT


@pytest.mark.asyncio
async def test_cancel_scheduled_before_tick_cannot_claim_picked_job(clock, quiet_logger):
    sender = RecordingSender()
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 1)

    async def cancel():
        return queue.cancel_email(job_id)

    pending_cancel = asyncio.create_task(cancel())
    await processor.tick()

    assert await pending_cancel is False
    assert queue.get_queue_item(job_id).status is JobStatus.SENT
    assert len(sender.calls) == 1


@pytest.mark.asyncio
async def test_start_and_shutdown_drain(clock, quiet_logger):
    sender = RecordingSender(delay=0.05)
    queue, processor = make_processor(clock, quiet_logger, sender, interval=0.05)
    job_id = queue.add_to_queue(make_payload(), 1)

    processor.start()
    assert processor.is_running
    await asyncio.sleep(0.01)
    assert processor.is_processing

    await processor.shutdown()

    assert not processor.is_processing
    assert queue.get_queue_item(job_id).status is JobStatus.SENT
    assert processor._task is None


@pytest.mark.asyncio
async def test_stop_idle_processor_cancels_timer(clock, quiet_logger):
    _, processor = make_processor(clock, quiet_logger, RecordingSender(), interval=10)
    processor.start()
    await asyncio.sleep(0.01)

    await processor.stop()

    assert not processor.is_running
    await processor.stop()


# --------------------------------------------------------------- end to end
@pytest.mark.asyncio
async def test_high_priority_job_sent_and_counted(clock, quiet_logger):
    provider = StubProvider("primary")
    registry = make_registry(quiet_logger, provider)
    sender = ProviderSender(registry, metrics=MailMetrics(), logger=quiet_logger)
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 1, {"priority": "high", "scheduled_at": clock.now})

    await processor.tick()

    job = queue.get_queue_item(job_id)
    assert job.status is JobStatus.SENT
    assert job.sent_at is not None
    assert job.sent_via == "primary"
    assert registry.get_config("primary").daily_sent == 1


@pytest.mark.asyncio
async def test_always_retryable_provider_fails_after_three_ticks(clock, quiet_logger):
    provider = StubProvider("primary", [retryable_error(503)])
    registry = make_registry(quiet_logger, provider)
    sender = ProviderSender(registry, metrics=MailMetrics(), logger=quiet_logger)
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 1)

    for _ in range(3):
        assert await processor.tick() == 1
        clock.advance(minutes=30)

    job = queue.get_queue_item(job_id)
    assert job.status is JobStatus.FAILED
    assert job.retry_count == 3
    assert job.error_message == "Service Unavailable"
    assert len(provider.calls) == 3
    assert registry.get_config("primary").daily_sent == 0


@pytest.mark.asyncio
async def test_failover_within_same_attempt(clock, quiet_logger):
    primary = StubProvider("p1", [permanent_error(400)])
    secondary = StubProvider("p2")
    registry = make_registry(quiet_logger, primary, secondary)
    sender = ProviderSender(registry, metrics=MailMetrics(), logger=quiet_logger)
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 1)

    assert await processor.tick() == 1

    job = queue.get_queue_item(job_id)
    assert job.status is JobStatus.SENT
    assert job.sent_via == "p2"
    assert job.retry_count == 0
    assert len(primary.calls) == 1
    assert len(secondary.calls) == 1
    assert registry.get_config("p1").daily_sent == 0
    assert registry.get_config("p2").daily_sent == 1


@pytest.mark.asyncio
async def test_no_provider_is_retryable_at_job_level(clock, quiet_logger):
    registry = ProviderRegistry(logger=quiet_logger)
    sender = ProviderSender(registry, metrics=MailMetrics(), logger=quiet_logger)
    queue, processor = make_processor(clock, quiet_logger, sender)
    job_id = queue.add_to_queue(make_payload(), 1)

    await processor.tick()

    job = queue.get_queue_item(job_id)
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error_message == "No available email provider"
