"""Delivery job queues.

- **memory**: in-process priority queue, no durability
- **qdrant**: jobs persisted in Qdrant, survive restarts

Example:
    ```python
    from hookline.config import Settings
    from hookline.queue import get_delivery_queue

    queue = get_delivery_queue(Settings(queue_backend="qdrant"), storage)
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hookline.models.base import Clock, utc_now

from .base import DeliveryJob, DeliveryQueue
from .memory import InMemoryDeliveryQueue
from .qdrant import QdrantDeliveryQueue

if TYPE_CHECKING:
    from hookline.config import Settings
    from hookline.storage import HooklineStorage


def get_delivery_queue(
    settings: Settings,
    storage: HooklineStorage,
    clock: Clock = utc_now,
) -> DeliveryQueue:
    """Create the queue selected by ``settings.queue_backend``."""
    if settings.queue_backend == "qdrant":
        return QdrantDeliveryQueue(
            storage,
            lease_seconds=settings.queue_lease_seconds,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
            clock=clock,
        )
    return InMemoryDeliveryQueue(lease_seconds=settings.queue_lease_seconds, clock=clock)


__all__ = [
    "DeliveryJob",
    "DeliveryQueue",
    "InMemoryDeliveryQueue",
    "QdrantDeliveryQueue",
    "get_delivery_queue",
]
