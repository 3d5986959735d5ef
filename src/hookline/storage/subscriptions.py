"""Subscription storage operations for Hookline.

The management layer owns subscription configuration; the delivery engine
reads it and mutates runtime counters through
:meth:`SubscriptionMixin.update_subscription_state`, which serializes
read-modify-write cycles per subscription.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from qdrant_client import models

if TYPE_CHECKING:
    from hookline.models import Subscription


class SubscriptionMixin:
    """Mixin providing subscription operations for HooklineStorage.

    This mixin expects the following attributes/methods from the base class:
    - _upsert, _retrieve, _delete, _delete_matching, _scroll_all, _match
    - _model_to_payload(model) / _payload_to_model(payload, cls)
    - _subscription_locks: per-subscription asyncio locks
    """

    _upsert: Any
    _retrieve: Any
    _delete: Any
    _delete_matching: Any
    _scroll_all: Any
    _match: Any
    _model_to_payload: Any
    _payload_to_model: Any
    _subscription_locks: Any

    async def store_subscription(self, subscription: Subscription) -> str:
        """Store (insert or replace) a subscription.

        Args:
            subscription: Subscription to store.

        Returns:
            The subscription ID.
        """
        payload = self._model_to_payload(subscription)
        payload["url"] = str(subscription.url)
        await self._upsert("subscriptions", subscription.id, payload)
        return subscription.id

    async def get_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
    ) -> Subscription | None:
        """Get a subscription by ID.

        Args:
            subscription_id: ID of the subscription.
            tenant_id: When given, subscriptions of other tenants are not returned.

        Returns:
            Subscription or None if not found.
        """
        from hookline.models import Subscription

        payload = await self._retrieve("subscriptions", subscription_id)
        if payload is None:
            return None
        subscription: Subscription = self._payload_to_model(payload, Subscription)
        if tenant_id is not None and subscription.tenant_id != tenant_id:
            return None
        return subscription

    async def list_subscriptions(
        self,
        tenant_id: str,
        event_type: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[Subscription]:
        """List a tenant's subscriptions, oldest first.

        Args:
            tenant_id: Tenant to list subscriptions for.
            event_type: Only subscriptions whose filter contains this event type.
            status: Only subscriptions in this status.
            limit: Maximum subscriptions to return.

        Returns:
            List of Subscription.
        """
        from hookline.models import Subscription

        conditions: list[models.Condition] = [self._match("tenant_id", tenant_id)]
        if event_type is not None:
            # Matches when any element of the events array equals event_type
            conditions.append(self._match("events", event_type))
        if status is not None:
            conditions.append(self._match("status", status))

        payloads = await self._scroll_all(
            "subscriptions", models.Filter(must=conditions), limit=limit
        )
        subscriptions: list[Subscription] = [
            self._payload_to_model(p, Subscription) for p in payloads
        ]
        subscriptions.sort(key=lambda s: s.created_at)
        return subscriptions

    async def get_subscriptions_for_event(
        self,
        tenant_id: str,
        event_type: str,
    ) -> list[Subscription]:
        """Get all of a tenant's subscriptions whose filter contains an event type.

        Status is not filtered here; gating on status is the dispatcher's job.
        """
        subscriptions = await self.list_subscriptions(tenant_id=tenant_id, event_type=event_type)
        return [s for s in subscriptions if s.subscribes_to(event_type)]

    async def update_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
        **updates: Any,
    ) -> Subscription | None:
        """Update subscription configuration fields.

        Args:
            subscription_id: ID of the subscription to update.
            tenant_id: Optional tenant check.
            **updates: Fields to update.

        Returns:
            Updated Subscription or None if not found.
        """
        async with self._subscription_locks[subscription_id]:
            subscription = await self.get_subscription(subscription_id, tenant_id)
            if subscription is None:
                return None
            # Validate the merged record so bad values never reach storage
            subscription = type(subscription).model_validate(
                {**subscription.model_dump(), **updates}
            )
            subscription.updated_at = datetime.now(UTC)
            await self.store_subscription(subscription)
            return subscription

    async def update_subscription_state(
        self,
        subscription_id: str,
        mutate: Callable[[Subscription], None],
    ) -> Subscription | None:
        """Atomically apply ``mutate`` to a subscription's stored state.

        Concurrent workers finishing attempts for the same subscription are
        serialized, so counter updates are never lost within this process.

        Args:
            subscription_id: ID of the subscription.
            mutate: Function changing the subscription in place.

        Returns:
            The stored subscription, or None if it no longer exists.
        """
        async with self._subscription_locks[subscription_id]:
            subscription = await self.get_subscription(subscription_id)
            if subscription is None:
                return None
            mutate(subscription)
            subscription.updated_at = datetime.now(UTC)
            await self.store_subscription(subscription)
            return subscription

    async def delete_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
    ) -> bool:
        """Delete a subscription and its delivery history.

        Returns:
            True if deleted, False if not found.
        """
        async with self._subscription_locks[subscription_id]:
            subscription = await self.get_subscription(subscription_id, tenant_id)
            if subscription is None:
                return False
            await self._delete("subscriptions", subscription_id)
            await self._delete_matching(
                "deliveries",
                models.Filter(must=[self._match("subscription_id", subscription_id)]),
            )
        self._subscription_locks.pop(subscription_id, None)
        return True
