"""Delivery storage operations for Hookline.

Stores one record per delivery attempt-series and answers the history and
stats queries operators use to inspect a subscription.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from qdrant_client import models

if TYPE_CHECKING:
    from hookline.models import Delivery, DeliveryStats


class DeliveryMixin:
    """Mixin providing delivery operations for HooklineStorage.

    This mixin expects the following attributes/methods from the base class:
    - _upsert, _retrieve, _count, _delete_matching, _match
    - _scroll_ordered, _iter_pages
    - _delivery_locks: per-delivery asyncio locks
    - _model_to_payload(model) / _payload_to_model(payload, cls)
    """

    _upsert: Any
    _retrieve: Any
    _count: Any
    _delete_matching: Any
    _scroll_ordered: Any
    _iter_pages: Any
    _match: Any
    _delivery_locks: Any
    _model_to_payload: Any
    _payload_to_model: Any

    async def log_delivery(self, delivery: Delivery) -> str:
        """Store a new delivery record.

        Args:
            delivery: Delivery to store.

        Returns:
            The delivery ID.
        """
        await self._upsert("deliveries", delivery.id, self._model_to_payload(delivery))
        return delivery.id

    async def update_delivery(self, delivery: Delivery) -> str:
        """Update an existing delivery record."""
        return await self.log_delivery(delivery)

    async def get_delivery(
        self,
        delivery_id: str,
        tenant_id: str | None = None,
    ) -> Delivery | None:
        """Get a delivery by ID.

        Args:
            delivery_id: Internal delivery ID.
            tenant_id: When given, deliveries of other tenants are not returned.

        Returns:
            Delivery or None if not found.
        """
        from hookline.models import Delivery

        payload = await self._retrieve("deliveries", delivery_id)
        if payload is None:
            return None
        delivery: Delivery = self._payload_to_model(payload, Delivery)
        if tenant_id is not None and delivery.tenant_id != tenant_id:
            return None
        return delivery

    async def update_delivery_state(
        self,
        delivery_id: str,
        mutate: Callable[[Delivery], bool],
    ) -> Delivery | None:
        """Atomically apply ``mutate`` to a stored delivery.

        ``mutate`` changes the delivery in place and returns True to persist
        it, or False to leave the stored record untouched. Exceptions it
        raises propagate and nothing is written.

        Returns:
            The persisted delivery, or None if it does not exist or
            ``mutate`` declined.
        """
        async with self._delivery_locks[delivery_id]:
            delivery = await self.get_delivery(delivery_id)
            if delivery is None or not mutate(delivery):
                return None
            await self.log_delivery(delivery)
            return delivery

    async def update_delivery_if_owned(self, delivery: Delivery, owner: str) -> bool:
        """Persist the outcome of an attempt if ``owner`` still runs it.

        The write only happens while the stored delivery is in progress
        under ``owner``. A worker whose attempt was reclaimed can therefore
        never overwrite the record of the worker that took over.

        Returns:
            True if written.
        """
        from hookline.models import DeliveryStatus

        async with self._delivery_locks[delivery.id]:
            stored = await self.get_delivery(delivery.id)
            if (
                stored is None
                or stored.status != DeliveryStatus.IN_PROGRESS
                or stored.attempt_owner != owner
            ):
                return False
            await self.log_delivery(delivery)
            return True

    async def get_delivery_history(
        self,
        subscription_id: str,
        limit: int = 100,
        status: str | None = None,
    ) -> list[Delivery]:
        """Get the most recent deliveries of a subscription.

        Args:
            subscription_id: Subscription to read history for.
            limit: Maximum entries to return.
            status: Optional status filter.

        Returns:
            List of Delivery sorted by creation time (newest first).
        """
        from hookline.models import Delivery

        conditions: list[models.Condition] = [self._match("subscription_id", subscription_id)]
        if status is not None:
            conditions.append(self._match("status", status))

        payloads = await self._scroll_ordered(
            "deliveries", models.Filter(must=conditions), order_key="created_ts", limit=limit
        )
        return [self._payload_to_model(p, Delivery) for p in payloads]

    async def get_delivery_stats(
        self,
        subscription_id: str,
        now: datetime,
        window_days: int = 7,
    ) -> DeliveryStats:
        """Aggregate a subscription's deliveries created within a window.

        Status counts are exact counts; the status code histogram and the
        average response time stream over every record in the window.

        Args:
            subscription_id: Subscription to aggregate.
            now: Reference time for the window.
            window_days: Window size in days.

        Returns:
            DeliveryStats with status counts, status code histogram and
            average response time.
        """
        from hookline.models import DeliveryStats, DeliveryStatus

        since = now - timedelta(days=window_days)
        window: list[models.Condition] = [
            self._match("subscription_id", subscription_id),
            models.FieldCondition(key="created_ts", range=models.Range(gte=since.timestamp())),
        ]

        stats = DeliveryStats(subscription_id=subscription_id, window_days=window_days)
        status_fields = {
            DeliveryStatus.SUCCESS: "successful",
            DeliveryStatus.FAILED: "failed",
            DeliveryStatus.PENDING: "pending",
            DeliveryStatus.IN_PROGRESS: "in_progress",
            DeliveryStatus.RETRY: "retrying",
        }
        for status, field in status_fields.items():
            count = await self._count(
                "deliveries",
                models.Filter(must=[*window, self._match("status", status.value)]),
            )
            setattr(stats, field, count)
            stats.total += count

        total_response_time = 0
        response_count = 0
        async for page in self._iter_pages(
            "deliveries",
            models.Filter(must=window),
            fields=["response_status_code", "response_time_ms"],
        ):
            for record in page:
                code = record.get("response_status_code")
                if code is not None:
                    key = str(code)
                    stats.status_codes[key] = stats.status_codes.get(key, 0) + 1
                response_time = record.get("response_time_ms")
                if response_time is not None:
                    total_response_time += response_time
                    response_count += 1

        if response_count:
            stats.avg_response_time_ms = round(total_response_time / response_count)

        return stats

    async def count_deliveries(
        self,
        subscription_id: str | None = None,
        status: str | None = None,
    ) -> int:
        """Count deliveries, optionally for one subscription and/or status."""
        conditions: list[models.Condition] = []
        if subscription_id is not None:
            conditions.append(self._match("subscription_id", subscription_id))
        if status is not None:
            conditions.append(self._match("status", status))
        return await self._count("deliveries", models.Filter(must=conditions) if conditions else None)

    async def purge_deliveries(self, created_before: datetime, status: str = "success") -> int:
        """Delete deliveries in ``status`` created before a cutoff.

        Returns:
            Number of deleted deliveries.
        """
        query_filter = models.Filter(
            must=[
                self._match("status", status),
                models.FieldCondition(
                    key="created_ts", range=models.Range(lt=created_before.timestamp())
                ),
            ]
        )
        count = await self._count("deliveries", query_filter)
        if count:
            await self._delete_matching("deliveries", query_filter)
        return count
