"""Retry scheduling with capped exponential backoff.

Delays are realized by re-enqueueing the delivery job with a visibility
delay; no worker ever sleeps on a retry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from hookline.models import Delivery, Subscription
from hookline.models.base import Clock, utc_now
from hookline.queue import DeliveryJob

if TYPE_CHECKING:
    from hookline.queue import DeliveryQueue
    from hookline.storage import HooklineStorage

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_MS = 5000
DEFAULT_MAX_DELAY_MS = 300000


def backoff_delay_ms(
    attempt_number: int,
    base_ms: int = DEFAULT_BASE_DELAY_MS,
    cap_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Delay before the next attempt after failed attempt ``attempt_number``.

    ``attempt_number`` is zero-based: the delay after the first failed
    attempt is ``base_ms``, then it doubles until it reaches ``cap_ms``.

    Example:
        >>> [backoff_delay_ms(n) for n in range(8)]
        [5000, 10000, 20000, 40000, 80000, 160000, 300000, 300000]
    """
    if attempt_number < 0:
        raise ValueError("attempt_number must be >= 0")
    return min(base_ms * 2**attempt_number, cap_ms)


class RetryScheduler:
    """Decides between retry and terminal failure and schedules the retry.

    Example:
        ```python
        scheduler = RetryScheduler(storage, queue, base_delay_ms=5000)
        if scheduler.should_retry(delivery, subscription):
            await scheduler.schedule(delivery)
        ```
    """

    def __init__(
        self,
        storage: HooklineStorage,
        queue: DeliveryQueue,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._queue = queue
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._clock = clock

    @staticmethod
    def should_retry(delivery: Delivery, subscription: Subscription) -> bool:
        """Whether a failed attempt gets another automatic attempt."""
        return subscription.retry_on_failure and delivery.attempt_number < delivery.max_attempts

    async def schedule(
        self,
        delivery: Delivery,
        base_delay_ms: int | None = None,
        owner: str | None = None,
    ) -> int | None:
        """Move a failed in-progress delivery to retry and re-enqueue it.

        Args:
            delivery: Delivery whose attempt just failed.
            base_delay_ms: Backoff base carried by the job; defaults to the
                scheduler's configured base.
            owner: Attempt owner token. When given, the retry is only
                recorded if that worker still owns the attempt.

        Returns:
            The delay in milliseconds until the next attempt, or None if
            the attempt was taken over and nothing was scheduled.
        """
        base = base_delay_ms or self._base_delay_ms
        delay_ms = backoff_delay_ms(delivery.attempt_number - 1, base, self._max_delay_ms)
        now = self._clock()
        retry_after = now + timedelta(milliseconds=delay_ms)
        job = self._job_for(delivery, base, now)

        delivery.mark_retrying(retry_after, now)
        delivery.job_id = job.job_id
        if owner is None:
            await self._storage.update_delivery(delivery)
        elif not await self._storage.update_delivery_if_owned(delivery, owner):
            return None
        await self._queue.enqueue(job, delay_ms=delay_ms)

        logger.info(
            "Delivery %s scheduled for retry (attempt %d of %d in %d ms)",
            delivery.id,
            delivery.attempt_number + 1,
            delivery.max_attempts,
            delay_ms,
        )
        return delay_ms

    async def rearm(self, delivery_id: str) -> Delivery | None:
        """Operator retry: re-arm a delivery and enqueue it immediately.

        The job it enqueues replaces any job still queued for the delivery,
        so a delivery waiting for its backoff is not attempted twice.

        Returns:
            The re-armed delivery, or None if it does not exist.

        Raises:
            InvalidTransitionError: If the delivery is in flight.
        """
        now = self._clock()
        job = DeliveryJob(
            delivery_id=delivery_id,
            max_attempts=1,
            backoff_base_ms=self._base_delay_ms,
            enqueued_at=now,
        )

        def apply(delivery: Delivery) -> bool:
            delivery.rearm(now, job_id=job.job_id)
            job.max_attempts = delivery.max_attempts
            return True

        delivery = await self._storage.update_delivery_state(delivery_id, apply)
        if delivery is None:
            return None
        await self._queue.enqueue(job)
        logger.info("Delivery %s re-armed for manual retry", delivery.id)
        return delivery

    @staticmethod
    def _job_for(delivery: Delivery, base_delay_ms: int, now: datetime) -> DeliveryJob:
        return DeliveryJob(
            delivery_id=delivery.id,
            max_attempts=delivery.max_attempts,
            backoff_base_ms=base_delay_ms,
            enqueued_at=now,
        )
