"""Unit tests for delivery job queues.

Both implementations are exercised through the same behaviors: delayed
visibility, leasing, acknowledgement and redelivery after lease expiry.
"""

import pytest
from conftest import FakeClock

from hookline.config import Settings
from hookline.exceptions import QueueError
from hookline.queue import (
    DeliveryJob,
    DeliveryQueue,
    InMemoryDeliveryQueue,
    QdrantDeliveryQueue,
    get_delivery_queue,
)
from hookline.storage import HooklineStorage


def make_job(delivery_id: str = "dlv_1") -> DeliveryJob:
    return DeliveryJob(delivery_id=delivery_id, max_attempts=4, backoff_base_ms=5000)


@pytest.fixture(params=["memory", "qdrant"])
def any_queue(request, clock: FakeClock, storage: HooklineStorage) -> DeliveryQueue:
    if request.param == "memory":
        return InMemoryDeliveryQueue(lease_seconds=60, clock=clock)
    return QdrantDeliveryQueue(storage, lease_seconds=60, poll_interval_seconds=0.01, clock=clock)


class TestDeliveryQueue:
    """Behaviors shared by all queue implementations."""

    def test_implements_protocol(self, any_queue):
        assert isinstance(any_queue, DeliveryQueue)

    async def test_enqueue_and_consume(self, any_queue):
        await any_queue.enqueue(make_job())
        job = await any_queue.consume(timeout=0)
        assert job is not None
        assert job.delivery_id == "dlv_1"
        assert job.receipt is not None

    async def test_consume_empty_returns_none(self, any_queue):
        assert await any_queue.consume(timeout=0) is None

    async def test_delay_hides_job(self, any_queue, clock):
        await any_queue.enqueue(make_job(), delay_ms=5000)
        assert await any_queue.consume(timeout=0) is None

        clock.advance(seconds=5)
        assert await any_queue.consume(timeout=0) is not None

    async def test_leased_job_is_not_handed_out_twice(self, any_queue):
        await any_queue.enqueue(make_job())
        assert await any_queue.consume(timeout=0) is not None
        assert await any_queue.consume(timeout=0) is None

    async def test_ack_removes_job(self, any_queue, clock):
        await any_queue.enqueue(make_job())
        job = await any_queue.consume(timeout=0)
        await any_queue.ack(job)

        assert await any_queue.depth() == 0
        clock.advance(seconds=120)
        assert await any_queue.consume(timeout=0) is None

    async def test_unacked_job_redelivered_after_lease(self, any_queue, clock):
        """A consumer that dies without ack loses its lease."""
        await any_queue.enqueue(make_job())
        first = await any_queue.consume(timeout=0)

        clock.advance(seconds=61)
        second = await any_queue.consume(timeout=0)

        assert second is not None
        assert second.job_id == first.job_id
        assert second.receipt != first.receipt
        assert second.redeliveries == 1

    async def test_stale_ack_ignored(self, any_queue, clock):
        """An ack from a consumer whose lease expired does not drop the job."""
        await any_queue.enqueue(make_job())
        stale = await any_queue.consume(timeout=0)
        clock.advance(seconds=61)
        await any_queue.consume(timeout=0)

        await any_queue.ack(stale)

        assert await any_queue.depth() == 1

    async def test_release_with_delay(self, any_queue, clock):
        await any_queue.enqueue(make_job())
        job = await any_queue.consume(timeout=0)

        await any_queue.release(job, delay_ms=2000)
        assert await any_queue.consume(timeout=0) is None
        clock.advance(seconds=2)
        assert await any_queue.consume(timeout=0) is not None

    async def test_depth_counts_delayed_and_leased(self, any_queue):
        await any_queue.enqueue(make_job("dlv_1"))
        await any_queue.enqueue(make_job("dlv_2"), delay_ms=60000)
        await any_queue.consume(timeout=0)
        assert await any_queue.depth() == 2

    async def test_enqueue_after_close_raises(self, any_queue):
        await any_queue.close()
        with pytest.raises(QueueError):
            await any_queue.enqueue(make_job())


class TestInMemoryDeliveryQueue:
    """Tests specific to the in-process queue."""

    async def test_enqueue_copies_job(self, queue):
        job = make_job()
        await queue.enqueue(job)
        job.delivery_id = "changed"
        assert queue.snapshot()[0].delivery_id == "dlv_1"

    async def test_snapshot_orders_by_visibility(self, queue):
        await queue.enqueue(make_job("later"), delay_ms=1000)
        await queue.enqueue(make_job("sooner"))
        assert [j.delivery_id for j in queue.snapshot()] == ["sooner", "later"]


class TestQdrantDeliveryQueue:
    """Tests specific to the durable queue."""

    async def test_jobs_survive_new_queue_instance(self, storage, clock):
        """A second queue over the same store sees jobs enqueued by the first."""
        first = QdrantDeliveryQueue(storage, clock=clock)
        await first.enqueue(make_job())

        restarted = QdrantDeliveryQueue(storage, clock=clock)
        job = await restarted.consume(timeout=0)
        assert job is not None
        assert job.delivery_id == "dlv_1"


class TestGetDeliveryQueue:
    """Tests for the queue factory."""

    def test_memory_backend(self, storage):
        queue = get_delivery_queue(Settings(queue_backend="memory"), storage)
        assert isinstance(queue, InMemoryDeliveryQueue)

    def test_qdrant_backend(self, storage):
        queue = get_delivery_queue(Settings(queue_backend="qdrant"), storage)
        assert isinstance(queue, QdrantDeliveryQueue)
