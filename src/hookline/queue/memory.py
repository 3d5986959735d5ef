"""In-process delivery queue.

A priority queue keyed by visibility time. Suitable for development and
tests; jobs are lost when the process exits.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from datetime import timedelta

from hookline.exceptions import QueueError
from hookline.models.base import Clock, utc_now

from .base import DeliveryJob

logger = logging.getLogger(__name__)


class InMemoryDeliveryQueue:
    """Delayed, leased job queue held in process memory.

    Example:
        ```python
        queue = InMemoryDeliveryQueue(lease_seconds=60)
        await queue.enqueue(job, delay_ms=5000)
        job = await queue.consume()
        ...
        await queue.ack(job)
        ```
    """

    def __init__(self, lease_seconds: float = 120.0, clock: Clock = utc_now) -> None:
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock
        self._heap: list[tuple[float, int, str]] = []
        self._jobs: dict[str, DeliveryJob] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> None:
        if self._closed:
            raise QueueError("Queue is closed")
        job = job.model_copy()
        job.visible_at = self._clock() + timedelta(milliseconds=delay_ms)
        job.receipt = None
        async with self._cond:
            self._push(job)
            self._cond.notify()

    async def consume(self, timeout: float | None = None) -> DeliveryJob | None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        async with self._cond:
            while not self._closed:
                job = self._pop_visible()
                if job is not None:
                    return job

                wait = self._seconds_until_next()
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except TimeoutError:
                    pass
            return None

    async def ack(self, job: DeliveryJob) -> None:
        async with self._cond:
            current = self._jobs.get(job.job_id)
            if current is not None and current.receipt == job.receipt:
                del self._jobs[job.job_id]
            else:
                logger.warning("Ignoring ack for job %s with a stale lease", job.job_id)

    async def release(self, job: DeliveryJob, delay_ms: int = 0) -> None:
        async with self._cond:
            current = self._jobs.get(job.job_id)
            if current is None or current.receipt != job.receipt:
                return
            current.visible_at = self._clock() + timedelta(milliseconds=delay_ms)
            self._push(current)
            self._cond.notify()

    async def depth(self) -> int:
        return len(self._jobs)

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def snapshot(self) -> list[DeliveryJob]:
        """Copies of all held jobs, earliest visibility first."""
        jobs = sorted(self._jobs.values(), key=lambda j: j.visible_at)
        return [job.model_copy() for job in jobs]

    def _push(self, job: DeliveryJob) -> None:
        self._jobs[job.job_id] = job
        heapq.heappush(self._heap, (job.visible_at.timestamp(), next(self._seq), job.job_id))

    def _pop_visible(self) -> DeliveryJob | None:
        now = self._clock()
        while self._heap:
            visible_ts, _, job_id = self._heap[0]
            job = self._jobs.get(job_id)
            # Drop heap entries made stale by ack, release or re-lease
            if job is None or job.visible_at.timestamp() != visible_ts:
                heapq.heappop(self._heap)
                continue
            if visible_ts > now.timestamp():
                return None
            heapq.heappop(self._heap)
            job.lease(now + self._lease)
            # Re-push at lease expiry so an unacked job comes back
            heapq.heappush(
                self._heap, (job.visible_at.timestamp(), next(self._seq), job.job_id)
            )
            return job.model_copy()
        return None

    def _seconds_until_next(self) -> float | None:
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self._clock().timestamp())
