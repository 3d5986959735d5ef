"""Webhook engine: the single entry point for producers and operators.

Example:
    ```python
    from hookline.engine import WebhookEngine

    async with WebhookEngine.create() as engine:
        subscription = await engine.create_subscription(
            tenant_id="company_1",
            url="https://example.com/hooks",
            events=["call.completed"],
        )

        # Producer side: fire and forget
        await engine.trigger("company_1", "call.completed", "call_123", {"duration": 42})

        # Worker side
        await engine.start_workers()
    ```
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx
import pydantic

from hookline.config import Settings
from hookline.exceptions import NotFoundError, ValidationError
from hookline.logging import get_logger
from hookline.models import (
    KNOWN_EVENT_TYPES,
    TEST_EVENT_TYPE,
    UPDATABLE_FIELDS,
    Delivery,
    DeliveryStats,
    Subscription,
    isoformat,
)
from hookline.models.base import Clock, utc_now
from hookline.queue import DeliveryQueue, get_delivery_queue
from hookline.storage import HooklineStorage
from hookline.webhooks import (
    DeliveryWorker,
    DeliveryWorkerPool,
    Dispatcher,
    RetryScheduler,
    circuit,
)

logger = get_logger(__name__)


def _validation_error(exc: pydantic.ValidationError) -> ValidationError:
    error = exc.errors()[0]
    field_name = ".".join(str(part) for part in error["loc"]) or "subscription"
    return ValidationError(field_name, error["msg"])


def _check_events(events: list[str]) -> None:
    if not events:
        raise ValidationError("events", "at least one event type is required")
    unknown = sorted(set(events) - set(KNOWN_EVENT_TYPES))
    if unknown:
        raise ValidationError("events", f"unknown event types: {', '.join(unknown)}")


@dataclass
class WebhookEngine:
    """Outbound webhook delivery engine.

    Provides:
    - trigger(): fan an event out to subscribed endpoints (never raises)
    - history(), stats(): delivery queries
    - retry(), test_delivery(): operator actions
    - subscription management (create, update, delete, reactivate)
    - start_workers() / stop_workers(): the delivery worker pool

    Dependencies are injected, so tests can pass an in-memory queue, a
    ``:memory:`` Qdrant store, an ``httpx.MockTransport`` client and a fake
    clock.

    Attributes:
        storage: Store for subscriptions, deliveries and queued jobs.
        queue: Delivery job queue.
        http_client: Client used for delivery and URL validation requests.
        settings: Configuration settings.
        clock: Source of "now".
        owns_http_client: Close ``http_client`` on :meth:`close`.
    """

    storage: HooklineStorage
    queue: DeliveryQueue
    http_client: httpx.AsyncClient
    settings: Settings
    clock: Clock = utc_now
    owns_http_client: bool = False

    dispatcher: Dispatcher = field(init=False, repr=False)
    scheduler: RetryScheduler = field(init=False, repr=False)
    worker: DeliveryWorker = field(init=False, repr=False)
    pool: DeliveryWorkerPool = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.dispatcher = Dispatcher(
            self.storage,
            self.queue,
            backoff_base_ms=self.settings.retry_base_delay_ms,
            half_open_enabled=self.settings.circuit_half_open_enabled,
            clock=self.clock,
        )
        self.scheduler = RetryScheduler(
            self.storage,
            self.queue,
            base_delay_ms=self.settings.retry_base_delay_ms,
            max_delay_ms=self.settings.retry_max_delay_ms,
            clock=self.clock,
        )
        self.worker = DeliveryWorker(
            self.storage,
            self.queue,
            self.http_client,
            self.scheduler,
            settings=self.settings,
            clock=self.clock,
        )
        self.pool = DeliveryWorkerPool(
            self.queue,
            self.worker,
            concurrency=self.settings.worker_concurrency,
            poll_timeout=self.settings.queue_poll_interval_seconds,
        )

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> WebhookEngine:
        """Create a WebhookEngine with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.
            http_client: Optional HTTP client. A client following up to five
                redirects is created (and owned) if None.
            clock: Source of "now".

        Returns:
            Configured WebhookEngine instance.
        """
        if settings is None:
            settings = Settings()

        storage = HooklineStorage(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            prefix=settings.collection_prefix,
            max_scroll_limit=settings.storage_max_scroll_limit,
        )
        owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(follow_redirects=True, max_redirects=5)

        return cls(
            storage=storage,
            queue=get_delivery_queue(settings, storage, clock),
            http_client=http_client,
            settings=settings,
            clock=clock,
            owns_http_client=owns_http_client,
        )

    async def initialize(self) -> None:
        """Initialize the engine (storage collections, etc.)."""
        await self.storage.initialize()

    async def close(self) -> None:
        """Stop workers and release queue, HTTP and storage resources."""
        await self.pool.stop()
        await self.queue.close()
        if self.owns_http_client:
            await self.http_client.aclose()
        await self.storage.close()

    async def __aenter__(self) -> WebhookEngine:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    # Producer API

    async def trigger(
        self,
        tenant_id: str,
        event_type: str,
        event_id: str,
        payload: dict[str, Any],
    ) -> list[str]:
        """Queue deliveries of an event to the tenant's subscribed endpoints.

        Returns as soon as the deliveries are queued and never raises.

        Returns:
            IDs of the created deliveries.
        """
        return await self.dispatcher.trigger(tenant_id, event_type, event_id, payload)

    # Workers

    async def start_workers(self) -> None:
        """Start the background worker pool."""
        await self.pool.start()

    async def stop_workers(self) -> None:
        await self.pool.stop()

    async def run_workers(self) -> None:
        """Run the worker pool until cancelled."""
        await self.pool.run_forever()

    async def process_delivery(self, delivery_id: str) -> Delivery | None:
        """Run one attempt for a delivery in the calling task."""
        return await self.worker.process_delivery(delivery_id)

    async def process_ready(self, max_jobs: int | None = None) -> int:
        """Process all currently ready jobs in the calling task.

        Returns:
            Number of jobs processed.
        """
        return await self.pool.drain(max_jobs)

    # Delivery queries and operator actions

    async def get_delivery(self, delivery_id: str, tenant_id: str | None = None) -> Delivery:
        delivery = await self.storage.get_delivery(delivery_id, tenant_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def history(
        self,
        subscription_id: str,
        limit: int = 100,
        status: str | None = None,
    ) -> list[Delivery]:
        """Recent deliveries of a subscription, newest first."""
        return await self.storage.get_delivery_history(subscription_id, limit=limit, status=status)

    async def stats(self, subscription_id: str, window_days: int = 7) -> DeliveryStats:
        """Aggregate a subscription's deliveries created in the last ``window_days``."""
        return await self.storage.get_delivery_stats(
            subscription_id, now=self.clock(), window_days=window_days
        )

    async def retry(self, delivery_id: str, tenant_id: str | None = None) -> Delivery:
        """Manually re-arm a delivery and attempt it right away.

        A failed or successful delivery gets exactly one more attempt. A
        delivery waiting for an automatic retry keeps its remaining attempts.

        Raises:
            NotFoundError: If the delivery does not exist.
            InvalidTransitionError: If the delivery is currently in flight.
        """
        await self.get_delivery(delivery_id, tenant_id)
        delivery = await self.scheduler.rearm(delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def test_delivery(self, subscription_id: str, tenant_id: str | None = None) -> Delivery:
        """Send a synthetic ``test.webhook`` event to one subscription.

        The delivery goes through the regular queue and worker. It bypasses
        the event filter and the circuit breaker gate, so an operator can
        probe a subscription whose circuit is open.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        subscription = await self.get_subscription(subscription_id, tenant_id)
        now = self.clock()
        payload = {
            "test": True,
            "webhook_id": subscription.id,
            "webhook_name": subscription.name,
            "timestamp": isoformat(now),
            "message": "This is a test webhook delivery",
        }
        event_id = f"test-{int(now.timestamp() * 1000)}"
        return await self.dispatcher.dispatch_to(
            subscription, TEST_EVENT_TYPE, event_id, payload, now=now
        )

    async def purge_deliveries(self, older_than_days: int | None = None) -> int:
        """Delete successful deliveries created before the retention window.

        Args:
            older_than_days: Retention in days. Defaults to
                ``settings.delivery_retention_days``.

        Returns:
            Number of deleted deliveries.
        """
        days = older_than_days or self.settings.delivery_retention_days
        cutoff = self.clock() - timedelta(days=days)
        deleted = await self.storage.purge_deliveries(created_before=cutoff)
        logger.info("deliveries_purged", deleted=deleted, older_than_days=days)
        return deleted

    # Subscription management

    async def create_subscription(
        self,
        tenant_id: str,
        url: str,
        events: list[str] | None = None,
        verify_url: bool = False,
        **options: Any,
    ) -> Subscription:
        """Register a webhook endpoint.

        A 64-character hex signing secret is generated. It is returned on the
        subscription and cannot be changed later.

        Args:
            tenant_id: Tenant that owns the subscription.
            url: Endpoint URL.
            events: Event types to deliver. Defaults to all known types.
            verify_url: Reject URLs that fail :meth:`validate_url`.
            **options: Other subscription fields (name, auth, custom_headers,
                timeout_seconds, max_retries, ...).

        Raises:
            ValidationError: If a field is invalid or the URL is unreachable.
        """
        if events is None:
            events = list(KNOWN_EVENT_TYPES)
        _check_events(events)
        unknown = set(options) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "field cannot be set")

        try:
            subscription = Subscription(
                tenant_id=tenant_id,
                url=url,
                events=events,
                signing_secret=secrets.token_hex(32),
                created_at=self.clock(),
                updated_at=self.clock(),
                **options,
            )
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e

        if verify_url and not await self.validate_url(url):
            raise ValidationError("url", "URL is not reachable")

        await self.storage.store_subscription(subscription)
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            tenant_id=tenant_id,
            events=len(events),
        )
        return subscription

    async def get_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
    ) -> Subscription:
        """Get a subscription.

        Raises:
            NotFoundError: If it does not exist (or belongs to another tenant).
        """
        subscription = await self.storage.get_subscription(subscription_id, tenant_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def list_subscriptions(
        self,
        tenant_id: str,
        event_type: str | None = None,
        status: str | None = None,
    ) -> list[Subscription]:
        return await self.storage.list_subscriptions(tenant_id, event_type=event_type, status=status)

    async def update_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
        verify_url: bool = False,
        **updates: Any,
    ) -> Subscription:
        """Change subscription configuration.

        The signing secret and runtime counters cannot be updated.

        Raises:
            NotFoundError: If the subscription does not exist.
            ValidationError: If an update is not allowed or invalid.
        """
        forbidden = set(updates) - UPDATABLE_FIELDS
        if forbidden:
            raise ValidationError(sorted(forbidden)[0], "field cannot be updated")
        if "events" in updates:
            _check_events(updates["events"])

        current = await self.get_subscription(subscription_id, tenant_id)
        new_url = updates.get("url")
        if verify_url and new_url is not None and new_url != str(current.url):
            if not await self.validate_url(new_url):
                raise ValidationError("url", "URL is not reachable")

        try:
            subscription = await self.storage.update_subscription(
                subscription_id, tenant_id, **updates
            )
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        logger.info(
            "subscription_updated",
            subscription_id=subscription_id,
            fields=sorted(updates),
        )
        return subscription

    async def delete_subscription(self, subscription_id: str, tenant_id: str | None = None) -> None:
        """Delete a subscription and its delivery history.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        if not await self.storage.delete_subscription(subscription_id, tenant_id):
            raise NotFoundError("subscription", subscription_id)
        logger.info("subscription_deleted", subscription_id=subscription_id)

    async def reactivate_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
    ) -> Subscription:
        """Close an open circuit (or re-enable an inactive subscription).

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        await self.get_subscription(subscription_id, tenant_id)
        now = self.clock()
        subscription = await self.storage.update_subscription_state(
            subscription_id, lambda s: circuit.reactivate(s, now)
        )
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        logger.info("subscription_reactivated", subscription_id=subscription_id)
        return subscription

    async def validate_url(self, url: str) -> bool:
        """Check that an endpoint answers a HEAD request with a status below 500."""
        try:
            response = await self.http_client.head(
                url, timeout=self.settings.url_validation_timeout_seconds
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info("url_validation_failed", url=url, error=str(e) or type(e).__name__)
            return False
        return response.status_code < 500


__all__ = ["WebhookEngine"]
