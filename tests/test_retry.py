"""Unit tests for backoff and the retry scheduler."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock, make_subscription

from hookline.models import Delivery, DeliveryStatus
from hookline.queue import InMemoryDeliveryQueue
from hookline.webhooks.retry import RetryScheduler, backoff_delay_ms


class TestBackoffDelay:
    """Tests for backoff_delay_ms."""

    def test_default_schedule(self):
        """5s doubling, capped at 5 minutes."""
        assert [backoff_delay_ms(n) for n in range(8)] == [
            5000,
            10000,
            20000,
            40000,
            80000,
            160000,
            300000,
            300000,
        ]

    def test_custom_base_and_cap(self):
        assert [backoff_delay_ms(n, base_ms=100, cap_ms=350) for n in range(4)] == [
            100,
            200,
            350,
            350,
        ]

    def test_large_attempt_stays_capped(self):
        assert backoff_delay_ms(500) == 300000

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            backoff_delay_ms(-1)


@pytest.fixture
def scheduler_deps(clock: FakeClock):
    storage = AsyncMock()
    queue = InMemoryDeliveryQueue(clock=clock)
    scheduler = RetryScheduler(storage, queue, base_delay_ms=5000, max_delay_ms=300000, clock=clock)
    return storage, queue, scheduler


def failed_attempt(attempt_number: int, max_attempts: int) -> Delivery:
    return Delivery(
        subscription_id="sub_1",
        tenant_id="company_1",
        event_type="call.completed",
        event_id="call_1",
        payload={},
        status=DeliveryStatus.IN_PROGRESS,
        attempt_number=attempt_number,
        max_attempts=max_attempts,
    )


class TestShouldRetry:
    """Tests for RetryScheduler.should_retry."""

    def test_retries_until_budget_spent(self):
        sub = make_subscription(max_retries=2)
        assert RetryScheduler.should_retry(failed_attempt(1, 3), sub)
        assert RetryScheduler.should_retry(failed_attempt(2, 3), sub)
        assert not RetryScheduler.should_retry(failed_attempt(3, 3), sub)

    def test_retry_disabled(self):
        sub = make_subscription(retry_on_failure=False)
        assert not RetryScheduler.should_retry(failed_attempt(1, 4), sub)


class TestSchedule:
    """Tests for RetryScheduler.schedule."""

    async def test_marks_retry_and_enqueues_with_delay(self, scheduler_deps, clock):
        storage, queue, scheduler = scheduler_deps
        delivery = failed_attempt(2, 4)

        delay = await scheduler.schedule(delivery)

        assert delay == 10000
        assert delivery.status == DeliveryStatus.RETRY
        assert delivery.retry_after == clock.now + timedelta(milliseconds=10000)
        storage.update_delivery.assert_awaited_once_with(delivery)

        (job,) = queue.snapshot()
        assert job.delivery_id == delivery.id
        assert job.visible_at == clock.now + timedelta(milliseconds=10000)

    async def test_job_not_visible_before_delay(self, scheduler_deps, clock):
        _, queue, scheduler = scheduler_deps
        await scheduler.schedule(failed_attempt(1, 4))

        assert await queue.consume(timeout=0) is None
        clock.advance(seconds=5)
        assert await queue.consume(timeout=0) is not None

    async def test_job_base_overrides_default(self, scheduler_deps):
        _, _, scheduler = scheduler_deps
        assert await scheduler.schedule(failed_attempt(1, 4), base_delay_ms=1000) == 1000

    async def test_job_becomes_current_job(self, scheduler_deps):
        _, queue, scheduler = scheduler_deps
        delivery = failed_attempt(1, 4)
        await scheduler.schedule(delivery)

        (job,) = queue.snapshot()
        assert delivery.job_id == job.job_id

    async def test_owner_check_failure_schedules_nothing(self, scheduler_deps):
        storage, queue, scheduler = scheduler_deps
        storage.update_delivery_if_owned.return_value = False

        assert await scheduler.schedule(failed_attempt(1, 4), owner="worker-a") is None
        assert queue.snapshot() == []
        storage.update_delivery.assert_not_awaited()


@pytest.fixture
def rearm_scheduler(storage, clock: FakeClock):
    queue = InMemoryDeliveryQueue(clock=clock)
    return queue, RetryScheduler(storage, queue, clock=clock)


class TestRearm:
    """Tests for RetryScheduler.rearm."""

    async def test_failed_delivery_gets_one_attempt(self, storage, rearm_scheduler):
        queue, scheduler = rearm_scheduler
        delivery = failed_attempt(3, 3)
        delivery.mark_failed(delivery.updated_at)
        await storage.log_delivery(delivery)

        rearmed = await scheduler.rearm(delivery.id)

        assert rearmed.status == DeliveryStatus.PENDING
        assert rearmed.max_attempts == 4
        stored = await storage.get_delivery(delivery.id)
        assert stored.status == DeliveryStatus.PENDING
        job = await queue.consume(timeout=0)
        assert job is not None
        assert job.max_attempts == 4
        assert stored.job_id == job.job_id

    async def test_retrying_delivery_keeps_budget(self, storage, rearm_scheduler, clock):
        """Re-arming during backoff skips the wait without shrinking the budget."""
        queue, scheduler = rearm_scheduler
        delivery = failed_attempt(1, 4)
        delivery.mark_retrying(clock.now + timedelta(seconds=5), clock.now)
        delivery.job_id = "job_delayed"
        await storage.log_delivery(delivery)

        rearmed = await scheduler.rearm(delivery.id)

        assert rearmed.max_attempts == 4
        assert rearmed.attempt_number == 1
        assert rearmed.retry_after is None
        assert rearmed.job_id != "job_delayed"
        (job,) = queue.snapshot()
        assert job.job_id == rearmed.job_id

    async def test_missing_delivery(self, rearm_scheduler):
        queue, scheduler = rearm_scheduler
        assert await scheduler.rearm("dlv_missing") is None
        assert queue.snapshot() == []
