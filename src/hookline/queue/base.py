"""Delivery job queue abstraction.

Workers consume :class:`DeliveryJob` items from a :class:`DeliveryQueue`.
Delivery is at-least-once: a consumed job is leased, and a job that is not
acknowledged before its lease expires (worker crash, process restart) is
handed out again. Delays are realized by the queue itself, never by a
sleeping worker.
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from hookline.models.base import generate_id


class DeliveryJob(BaseModel):
    """A unit of work: attempt delivery ``delivery_id`` once.

    Attributes:
        job_id: Unique identifier of this queue entry.
        delivery_id: Delivery the worker should process.
        max_attempts: Total attempt budget of the delivery.
        backoff_base_ms: Base delay for exponential backoff.
        enqueued_at: When the job was enqueued.
        visible_at: When the job becomes (or became) available to consumers.
        receipt: Lease token of the current consumer, None when not leased.
        redeliveries: How often the job was handed out again after a lost lease.
    """

    model_config = ConfigDict(extra="forbid")

    job_id: str = Field(default_factory=lambda: generate_id("job"))
    delivery_id: str
    max_attempts: int = Field(ge=1)
    backoff_base_ms: int = Field(ge=1)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    visible_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    receipt: str | None = None
    redeliveries: int = Field(default=0, ge=0)

    def lease(self, until: datetime) -> DeliveryJob:
        """Hide the job until ``until`` under a fresh receipt."""
        if self.receipt is not None:
            self.redeliveries += 1
        self.receipt = uuid4().hex
        self.visible_at = until
        return self


@runtime_checkable
class DeliveryQueue(Protocol):
    """Protocol for delivery job queues.

    Implementations must keep a job until it is acknowledged.
    """

    @abstractmethod
    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> None:
        """Make ``job`` available after ``delay_ms`` milliseconds."""
        ...

    @abstractmethod
    async def consume(self, timeout: float | None = None) -> DeliveryJob | None:
        """Lease the next ready job.

        Args:
            timeout: Seconds to wait for a ready job. None waits forever,
                0 checks once.

        Returns:
            The leased job, or None if nothing became ready in time.
        """
        ...

    @abstractmethod
    async def ack(self, job: DeliveryJob) -> None:
        """Remove a leased job permanently."""
        ...

    @abstractmethod
    async def release(self, job: DeliveryJob, delay_ms: int = 0) -> None:
        """Give a leased job back so it is redelivered after ``delay_ms``."""
        ...

    @abstractmethod
    async def depth(self) -> int:
        """Number of jobs held (ready, delayed, or leased)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by the queue."""
        ...
