"""Durable delivery queue persisted in Qdrant.

Jobs live in the ``{prefix}_delivery_jobs`` collection, so queued and
delayed deliveries survive a process restart. A consumed job is leased by
moving its visibility forward; if the consumer dies before acknowledging,
the job becomes visible again when the lease runs out.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from hookline.exceptions import QueueError
from hookline.models.base import Clock, utc_now

from .base import DeliveryJob

if TYPE_CHECKING:
    from hookline.storage import HooklineStorage

logger = logging.getLogger(__name__)


class QdrantDeliveryQueue:
    """At-least-once delivery queue backed by HooklineStorage.

    Claims are serialized within one process. Several processes sharing the
    collection may occasionally hand out the same job twice; the worker's
    status checks make such duplicates harmless.
    """

    def __init__(
        self,
        storage: HooklineStorage,
        lease_seconds: float = 120.0,
        poll_interval_seconds: float = 1.0,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._lease = timedelta(seconds=lease_seconds)
        self._poll_interval = poll_interval_seconds
        self._clock = clock
        self._claim_lock = asyncio.Lock()
        self._closed = False

    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> None:
        if self._closed:
            raise QueueError("Queue is closed")
        job = job.model_copy()
        job.visible_at = self._clock() + timedelta(milliseconds=delay_ms)
        job.receipt = None
        await self._storage.store_job(job)

    async def consume(self, timeout: float | None = None) -> DeliveryJob | None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while not self._closed:
            job = await self._claim_next()
            if job is not None:
                return job

            wait = self._poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            await asyncio.sleep(wait)
        return None

    async def ack(self, job: DeliveryJob) -> None:
        stored = await self._storage.get_job(job.job_id)
        if stored is None:
            return
        if stored.receipt != job.receipt:
            logger.warning("Ignoring ack for job %s with a stale lease", job.job_id)
            return
        await self._storage.delete_job(job.job_id)

    async def release(self, job: DeliveryJob, delay_ms: int = 0) -> None:
        stored = await self._storage.get_job(job.job_id)
        if stored is None or stored.receipt != job.receipt:
            return
        stored.visible_at = self._clock() + timedelta(milliseconds=delay_ms)
        await self._storage.store_job(stored)

    async def depth(self) -> int:
        return await self._storage.count_jobs()

    async def close(self) -> None:
        self._closed = True

    async def _claim_next(self) -> DeliveryJob | None:
        async with self._claim_lock:
            now = self._clock()
            candidates = await self._storage.list_visible_jobs(now.timestamp(), limit=16)
            if not candidates:
                return None
            job = candidates[0]
            if job.receipt is not None:
                logger.info(
                    "Redelivering job %s for delivery %s after lease expiry",
                    job.job_id,
                    job.delivery_id,
                )
            job.lease(now + self._lease)
            await self._storage.store_job(job)
            return job
