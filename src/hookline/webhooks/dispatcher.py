"""Event fan-out: one delivery per matching subscription.

The dispatcher never performs HTTP. It snapshots the payload into a delivery
record, enqueues a job, and returns, so a slow subscriber cannot delay the
producer of the event.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from hookline.models import Delivery, Subscription, SubscriptionStatus, WebhookEnvelope
from hookline.models.base import Clock, utc_now
from hookline.queue import DeliveryJob

from . import circuit
from .retry import DEFAULT_BASE_DELAY_MS

if TYPE_CHECKING:
    from hookline.queue import DeliveryQueue
    from hookline.storage import HooklineStorage

logger = logging.getLogger(__name__)


class Dispatcher:
    """Creates and enqueues deliveries for triggered events.

    Example:
        ```python
        dispatcher = Dispatcher(storage, queue)

        delivery_ids = await dispatcher.trigger(
            tenant_id="company_1",
            event_type="call.completed",
            event_id="call_123",
            payload={"call_id": "call_123", "duration": 42},
        )
        ```
    """

    def __init__(
        self,
        storage: HooklineStorage,
        queue: DeliveryQueue,
        backoff_base_ms: int = DEFAULT_BASE_DELAY_MS,
        half_open_enabled: bool = False,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            storage: Store holding subscriptions and deliveries.
            queue: Queue the delivery jobs are enqueued on.
            backoff_base_ms: Backoff base carried by every job.
            half_open_enabled: Let one probe through to open circuits whose
                reset window has elapsed.
            clock: Source of "now".
        """
        self._storage = storage
        self._queue = queue
        self._backoff_base_ms = backoff_base_ms
        self._half_open_enabled = half_open_enabled
        self._clock = clock

    async def trigger(
        self,
        tenant_id: str,
        event_type: str,
        event_id: str,
        payload: dict[str, Any],
    ) -> list[str]:
        """Fan an event out to the tenant's subscribed, active subscriptions.

        Never raises: store and queue errors are logged and the event is
        dropped for the affected subscription.

        Args:
            tenant_id: Tenant the event belongs to.
            event_type: Event type, e.g. ``call.completed``.
            event_id: ID of the domain entity that triggered the event.
            payload: Event data; deep-copied before it is stored.

        Returns:
            IDs of the deliveries created.
        """
        try:
            subscriptions = await self._storage.get_subscriptions_for_event(tenant_id, event_type)
        except Exception:
            logger.exception(
                "Failed to look up subscriptions for %s (tenant %s)", event_type, tenant_id
            )
            return []

        if not subscriptions:
            logger.debug("No subscriptions for event %s (tenant %s)", event_type, tenant_id)
            return []

        now = self._clock()
        delivery_ids: list[str] = []

        for subscription in subscriptions:
            if not circuit.allows_dispatch(subscription, now, self._half_open_enabled):
                logger.debug(
                    "Skipping subscription %s in status %s",
                    subscription.id,
                    subscription.status.value,
                )
                continue

            try:
                if subscription.status == SubscriptionStatus.CIRCUIT_OPEN:
                    await self._start_probe(subscription, now)
                delivery = await self.dispatch_to(
                    subscription, event_type, event_id, payload, now=now
                )
            except Exception:
                logger.exception(
                    "Failed to dispatch %s to subscription %s", event_type, subscription.id
                )
                continue
            delivery_ids.append(delivery.id)

        return delivery_ids

    async def dispatch_to(
        self,
        subscription: Subscription,
        event_type: str,
        event_id: str,
        payload: dict[str, Any],
        now: datetime | None = None,
    ) -> Delivery:
        """Create and enqueue one delivery for one subscription.

        No status or filter gating happens here; :meth:`trigger` does that.
        Errors propagate to the caller.
        """
        now = now or self._clock()
        envelope = WebhookEnvelope.build(event_type, event_id, payload, triggered_at=now)
        delivery = Delivery(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_type=event_type,
            event_id=event_id,
            payload=envelope.to_payload(),
            max_attempts=subscription.max_attempts,
            created_at=now,
            updated_at=now,
        )
        job = DeliveryJob(
            delivery_id=delivery.id,
            max_attempts=delivery.max_attempts,
            backoff_base_ms=self._backoff_base_ms,
            enqueued_at=now,
        )
        delivery.job_id = job.job_id
        await self._storage.log_delivery(delivery)
        await self._queue.enqueue(job)
        logger.debug(
            "Queued delivery %s of %s to subscription %s",
            delivery.id,
            event_type,
            subscription.id,
        )
        return delivery

    async def _start_probe(self, subscription: Subscription, now: datetime) -> None:
        await self._storage.update_subscription_state(
            subscription.id, lambda s: circuit.start_probe(s, now)
        )
        logger.info("Sending half-open probe to subscription %s", subscription.id)
