"""Qdrant storage client for Hookline.

This module provides the HooklineStorage class that combines subscription
and delivery operations through mixins.

Example:
    ```python
    from hookline.storage import HooklineStorage

    async with HooklineStorage() as storage:
        await storage.store_subscription(subscription)
        history = await storage.get_delivery_history(subscription.id, limit=20)
    ```
"""

from __future__ import annotations

from typing import Any

from .base import COLLECTION_NAMES, StorageBase
from .deliveries import DeliveryMixin
from .jobs import JobMixin
from .subscriptions import SubscriptionMixin


class HooklineStorage(SubscriptionMixin, DeliveryMixin, JobMixin, StorageBase):
    """Async Qdrant storage for subscriptions, deliveries and queued jobs.

    This class combines functionality from multiple mixins:
    - SubscriptionMixin: store/get/list/update/delete subscriptions and the
      atomic runtime-state update used by workers
    - DeliveryMixin: log/update/get deliveries, history, stats, purge
    - JobMixin: persisted jobs of the durable delivery queue

    Attributes:
        client: Async Qdrant client instance.

    Example:
        ```python
        storage = HooklineStorage(url=":memory:")
        await storage.initialize()
        ```
    """

    async def __aenter__(self) -> HooklineStorage:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()


__all__ = [
    "COLLECTION_NAMES",
    "HooklineStorage",
]
