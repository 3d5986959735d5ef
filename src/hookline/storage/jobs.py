"""Delivery job storage backing the durable queue."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from qdrant_client import models

if TYPE_CHECKING:
    from hookline.queue.base import DeliveryJob


class JobMixin:
    """Mixin persisting queued delivery jobs for HooklineStorage.

    Jobs carry a ``visible_ts`` (epoch seconds): a job is ready when
    ``visible_ts <= now``. Leasing a job pushes ``visible_ts`` forward so an
    unacknowledged job becomes visible again after its lease expires.
    """

    _upsert: Any
    _retrieve: Any
    _delete: Any
    _count: Any
    _scroll_page: Any
    _payload_to_model: Any

    async def store_job(self, job: DeliveryJob) -> str:
        """Insert or replace a job."""
        payload = job.model_dump(mode="json")
        payload["visible_ts"] = job.visible_at.timestamp()
        await self._upsert("delivery_jobs", job.job_id, payload)
        return job.job_id

    async def get_job(self, job_id: str) -> DeliveryJob | None:
        from hookline.queue.base import DeliveryJob

        payload = await self._retrieve("delivery_jobs", job_id)
        if payload is None:
            return None
        payload.pop("visible_ts", None)
        return DeliveryJob.model_validate(payload)

    async def delete_job(self, job_id: str) -> None:
        await self._delete("delivery_jobs", job_id)

    async def list_visible_jobs(self, now_ts: float, limit: int = 16) -> list[DeliveryJob]:
        """Jobs ready at ``now_ts``, earliest first."""
        from hookline.queue.base import DeliveryJob

        query_filter = models.Filter(
            must=[models.FieldCondition(key="visible_ts", range=models.Range(lte=now_ts))]
        )
        payloads, _ = await self._scroll_page("delivery_jobs", query_filter, limit=limit)
        jobs = []
        for payload in payloads:
            payload.pop("visible_ts", None)
            jobs.append(DeliveryJob.model_validate(payload))
        jobs.sort(key=lambda j: j.visible_at)
        return jobs

    async def count_jobs(self) -> int:
        return int(await self._count("delivery_jobs"))
