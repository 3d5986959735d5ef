"""Delivery workers: perform one HTTP attempt per consumed job.

A :class:`DeliveryWorker` owns a delivery for the duration of one attempt:
it signs and POSTs the envelope, records the outcome, updates the
subscription's counters and circuit breaker, and hands failures to the
:class:`~hookline.webhooks.retry.RetryScheduler`. A
:class:`DeliveryWorkerPool` runs several workers against one queue.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import httpx

from hookline.config import Settings
from hookline.exceptions import ConfigurationError
from hookline.logging import delivery_context, get_logger
from hookline.models import (
    SENSITIVE_HEADERS,
    Delivery,
    DeliveryStatus,
    Subscription,
    SubscriptionStatus,
)
from hookline.models.base import Clock, isoformat, utc_now

from . import circuit
from .signing import compute_signature, serialize_payload

if TYPE_CHECKING:
    from hookline.queue import DeliveryJob, DeliveryQueue
    from hookline.storage import HooklineStorage

    from .retry import RetryScheduler

logger = get_logger(__name__)

MASKED_VALUE = "***"


def mask_headers(headers: dict[str, str]) -> dict[str, str]:
    """Copy of ``headers`` with credential values masked for storage."""
    return {
        name: MASKED_VALUE if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def classify_request_error(exc: httpx.RequestError) -> str:
    """Error type recorded for a request that produced no response."""
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "connection_error"
    if isinstance(exc, httpx.TransportError):
        return "transport_error"
    return "request_error"


class DeliveryWorker:
    """Processes delivery jobs, one HTTP attempt per job.

    A worker claims a delivery under a fresh owner token before sending and
    writes the outcome only while it still owns the attempt. An attempt
    becomes reclaimable once ``timeout_seconds + attempt_grace_seconds`` have
    passed, which the request itself can never outlast.

    Example:
        ```python
        worker = DeliveryWorker(storage, queue, http_client, scheduler, settings)

        job = await queue.consume()
        await worker.process_job(job)
        ```
    """

    def __init__(
        self,
        storage: HooklineStorage,
        queue: DeliveryQueue,
        http_client: httpx.AsyncClient,
        scheduler: RetryScheduler,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._queue = queue
        self._http = http_client
        self._scheduler = scheduler
        self._settings = settings or Settings()
        self._clock = clock

    async def process_job(self, job: DeliveryJob) -> Delivery | None:
        """Process a consumed job and acknowledge it.

        A job that is no longer the delivery's current job is dropped. A job
        that arrives before its delivery may be attempted (retry not yet due,
        or another worker's attempt still running) is released until then.
        Unexpected errors (store unavailable) release the job with a backoff
        so it is retried; the delivery itself is left untouched.
        """
        try:
            delivery = await self._storage.get_delivery(job.delivery_id)
            if delivery is not None and delivery.job_id not in (None, job.job_id):
                logger.info(
                    "stale_job_dropped",
                    job_id=job.job_id,
                    delivery_id=delivery.id,
                    current_job_id=delivery.job_id,
                )
                await self._queue.ack(job)
                return delivery

            if delivery is not None and await self._release_until_due(job, delivery):
                return delivery

            result = await self._process(delivery, job.delivery_id, job.backoff_base_ms)
            # Still in progress here means another worker owns the attempt
            if (
                result is not None
                and result.status == DeliveryStatus.IN_PROGRESS
                and await self._release_until_due(job, result)
            ):
                return result
        except Exception:
            logger.exception(
                "delivery_job_failed",
                job_id=job.job_id,
                delivery_id=job.delivery_id,
            )
            await self._queue.release(job, delay_ms=job.backoff_base_ms)
            return None

        await self._queue.ack(job)
        return result

    async def process_delivery(self, delivery_id: str) -> Delivery | None:
        """Run one attempt for a delivery, regardless of queue state.

        Terminal deliveries and deliveries with a running attempt are left
        untouched, so reprocessing is a no-op.

        Returns:
            The delivery after the attempt, or None if it does not exist.
        """
        delivery = await self._storage.get_delivery(delivery_id)
        return await self._process(delivery, delivery_id)

    def build_headers(
        self,
        subscription: Subscription,
        delivery: Delivery,
        body: bytes,
        now: datetime,
    ) -> dict[str, str]:
        """Request headers for an attempt, signature included."""
        if not subscription.signing_secret:
            raise ConfigurationError("Subscription has no signing secret")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.user_agent,
            "X-Webhook-ID": subscription.id,
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Event-ID": delivery.event_id,
            "X-Webhook-Timestamp": isoformat(now),
            "X-Webhook-Delivery-ID": delivery.delivery_id,
        }
        headers.update(subscription.custom_headers)
        headers.update(subscription.auth.headers())
        headers["X-Webhook-Signature"] = compute_signature(body, subscription.signing_secret)
        return headers

    async def _release_until_due(self, job: DeliveryJob, delivery: Delivery) -> bool:
        now = self._clock()
        due_at = self._due_at(delivery, now)
        if due_at is None:
            return False
        delay_ms = max(int((due_at - now).total_seconds() * 1000), 0)
        await self._queue.release(job, delay_ms=delay_ms)
        logger.debug(
            "delivery_job_deferred",
            delivery_id=delivery.id,
            status=delivery.status.value,
            delay_ms=delay_ms,
        )
        return True

    @staticmethod
    def _due_at(delivery: Delivery, now: datetime) -> datetime | None:
        """When a delivery that cannot be attempted now becomes attemptable."""
        if (
            delivery.status == DeliveryStatus.RETRY
            and delivery.retry_after is not None
            and delivery.retry_after > now
        ):
            return delivery.retry_after
        if (
            delivery.status == DeliveryStatus.IN_PROGRESS
            and delivery.attempt_expires_at is not None
            and not delivery.attempt_abandoned(now)
        ):
            return delivery.attempt_expires_at
        return None

    async def _process(
        self,
        delivery: Delivery | None,
        delivery_id: str,
        backoff_base_ms: int | None = None,
    ) -> Delivery | None:
        if delivery is None:
            logger.warning("delivery_not_found", delivery_id=delivery_id)
            return None
        if delivery.is_terminal:
            logger.debug(
                "delivery_already_complete",
                delivery_id=delivery.id,
                status=delivery.status.value,
            )
            return delivery

        with delivery_context(delivery.id, delivery.subscription_id):
            return await self._attempt(delivery, backoff_base_ms)

    async def _attempt(self, delivery: Delivery, backoff_base_ms: int | None) -> Delivery | None:
        now = self._clock()
        subscription = await self._storage.get_subscription(delivery.subscription_id)
        owner = uuid4().hex
        window = self._settings.attempt_grace_seconds
        if subscription is not None:
            window += subscription.timeout_seconds
        expires_at = now + timedelta(seconds=window)

        claimed = await self._storage.update_delivery_state(
            delivery.id, lambda d: self._claim(d, owner, now, expires_at)
        )
        if claimed is None:
            current = await self._storage.get_delivery(delivery.id)
            logger.info(
                "delivery_not_claimed",
                status=current.status.value if current is not None else None,
            )
            return current
        delivery = claimed

        try:
            subscription = self._check_configuration(subscription)
        except ConfigurationError as e:
            return await self._fail_configuration(delivery, owner, e.message, now)

        body = serialize_payload(delivery.payload)
        headers = self.build_headers(subscription, delivery, body, now)
        delivery.headers_sent = mask_headers(headers)

        success = await self._send(subscription, delivery, body, headers)
        now = self._clock()

        will_retry = not success and self._scheduler.should_retry(delivery, subscription)
        count_failure = not success and (
            self._settings.failure_counting == "attempt" or not will_retry
        )

        if will_retry:
            delay_ms = await self._scheduler.schedule(delivery, backoff_base_ms, owner=owner)
            persisted = delay_ms is not None
        else:
            if success:
                delivery.mark_success(now)
            else:
                delivery.mark_failed(now)
            persisted = await self._storage.update_delivery_if_owned(delivery, owner)

        if not persisted:
            logger.warning(
                "delivery_attempt_superseded",
                attempt_number=delivery.attempt_number,
                status_code=delivery.response_status_code,
            )
            return await self._storage.get_delivery(delivery.id)

        await self._record_outcome(
            subscription.id,
            success=success,
            status_code=delivery.response_status_code,
            count_failure=count_failure,
            now=now,
        )

        if success:
            logger.info(
                "delivery_succeeded",
                status_code=delivery.response_status_code,
                attempt_number=delivery.attempt_number,
                response_time_ms=delivery.response_time_ms,
            )
        elif not will_retry:
            logger.warning(
                "delivery_failed",
                error=delivery.error_message,
                attempt_number=delivery.attempt_number,
                max_attempts=delivery.max_attempts,
            )
        return delivery

    @staticmethod
    def _claim(delivery: Delivery, owner: str, now: datetime, expires_at: datetime) -> bool:
        if delivery.is_terminal:
            return False
        if delivery.status == DeliveryStatus.IN_PROGRESS:
            if not delivery.attempt_abandoned(now):
                return False
            logger.warning("delivery_reclaimed", attempt_number=delivery.attempt_number)
            delivery.reclaim(now)
        delivery.start_attempt(now, owner=owner, expires_at=expires_at)
        return True

    async def _send(
        self,
        subscription: Subscription,
        delivery: Delivery,
        body: bytes,
        headers: dict[str, str],
    ) -> bool:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            # httpx timeouts are per phase; cap the whole exchange as well
            async with asyncio.timeout(subscription.timeout_seconds):
                response = await self._http.post(
                    str(subscription.url),
                    content=body,
                    headers=headers,
                    timeout=subscription.timeout_seconds,
                )
        except (httpx.RequestError, TimeoutError) as exc:
            elapsed_ms = int((loop.time() - started) * 1000)
            if isinstance(exc, httpx.RequestError):
                error_type = classify_request_error(exc)
            else:
                error_type = "timeout"
            if error_type == "timeout":
                message = f"Request timed out after {subscription.timeout_seconds}s"
            else:
                message = str(exc) or type(exc).__name__
            delivery.record_transport_error(error_type, message, elapsed_ms, self._clock())
            logger.info("delivery_transport_error", error_type=error_type, error=message)
            return False

        elapsed_ms = int((loop.time() - started) * 1000)
        delivery.record_response(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
            response_time_ms=elapsed_ms,
            now=self._clock(),
            max_body_chars=self._settings.response_body_max_chars,
        )
        return response.is_success

    @staticmethod
    def _check_configuration(subscription: Subscription | None) -> Subscription:
        if subscription is None:
            raise ConfigurationError("Subscription not found")
        if subscription.status == SubscriptionStatus.INACTIVE:
            raise ConfigurationError("Subscription is inactive")
        if not subscription.signing_secret:
            raise ConfigurationError("Subscription has no signing secret")
        return subscription

    async def _fail_configuration(
        self, delivery: Delivery, owner: str, message: str, now: datetime
    ) -> Delivery:
        delivery.record_configuration_error(message, now)
        delivery.mark_failed(now)
        await self._storage.update_delivery_if_owned(delivery, owner)
        logger.error("delivery_configuration_error", error=message)
        return delivery

    async def _record_outcome(
        self,
        subscription_id: str,
        *,
        success: bool,
        status_code: int | None,
        count_failure: bool,
        now: datetime,
    ) -> None:
        def apply(subscription: Subscription) -> None:
            subscription.total_deliveries += 1
            subscription.last_triggered_at = now
            if status_code is not None:
                subscription.last_status_code = status_code
            if success:
                subscription.successful_deliveries += 1
                circuit.record_success(subscription, now)
            elif count_failure:
                circuit.record_failure(subscription, now)

        await self._storage.update_subscription_state(subscription_id, apply)


class DeliveryWorkerPool:
    """Runs ``concurrency`` worker loops against one queue.

    Example:
        ```python
        pool = DeliveryWorkerPool(queue, worker, concurrency=8)
        await pool.start()
        ...
        await pool.stop()
        ```
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        worker: DeliveryWorker,
        concurrency: int = 10,
        poll_timeout: float = 1.0,
    ) -> None:
        self._queue = queue
        self._worker = worker
        self._concurrency = concurrency
        self._poll_timeout = poll_timeout
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start the worker loops (no-op if already running)."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"hookline-worker-{index}")
            for index in range(self._concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self._concurrency)

    async def stop(self) -> None:
        """Cancel the worker loops and wait for them to finish.

        A job interrupted mid-attempt is not acknowledged; the queue hands it
        out again once its lease expires.
        """
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped")

    async def run_forever(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def drain(self, max_jobs: int | None = None) -> int:
        """Process every job that is ready right now, one at a time.

        Returns:
            Number of jobs processed.
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = await self._queue.consume(timeout=0)
            if job is None:
                break
            await self._worker.process_job(job)
            processed += 1
        return processed

    async def _run(self, index: int) -> None:
        while True:
            try:
                job = await self._queue.consume(timeout=self._poll_timeout)
                if job is None:
                    continue
                await self._worker.process_job(job)
            except Exception:
                logger.exception("worker_loop_error", worker=index)
                await asyncio.sleep(self._poll_timeout)
