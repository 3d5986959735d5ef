"""Storage layer for Hookline (Qdrant)."""

from .base import COLLECTION_NAMES, StorageBase
from .client import HooklineStorage
from .deliveries import DeliveryMixin
from .jobs import JobMixin
from .retry import qdrant_retry
from .subscriptions import SubscriptionMixin

__all__ = [
    "COLLECTION_NAMES",
    "DeliveryMixin",
    "JobMixin",
    "HooklineStorage",
    "StorageBase",
    "SubscriptionMixin",
    "qdrant_retry",
]
