"""Hookline data models.

Core Types:
    - Subscription: Tenant-configured webhook endpoint with policy and counters
    - Delivery: One attempt-series for one event to one subscription
    - WebhookEnvelope: The JSON body sent to subscribers

Supporting Types:
    - NoAuth, BasicAuth, BearerAuth, ApiKeyAuth: Authentication variants
    - DeliveryStats: Aggregate delivery counts for a subscription
"""

from .base import Clock, generate_id, isoformat, utc_now
from .delivery import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    truncate,
)
from .event import KNOWN_EVENT_TYPES, TEST_EVENT_TYPE, EventType, WebhookEnvelope
from .subscription import (
    SENSITIVE_HEADERS,
    UPDATABLE_FIELDS,
    ApiKeyAuth,
    AuthConfig,
    BasicAuth,
    BearerAuth,
    NoAuth,
    Subscription,
    SubscriptionStatus,
)

__all__ = [
    # Base helpers
    "Clock",
    "generate_id",
    "isoformat",
    "utc_now",
    # Events
    "KNOWN_EVENT_TYPES",
    "TEST_EVENT_TYPE",
    "EventType",
    "WebhookEnvelope",
    # Subscriptions
    "SENSITIVE_HEADERS",
    "UPDATABLE_FIELDS",
    "ApiKeyAuth",
    "AuthConfig",
    "BasicAuth",
    "BearerAuth",
    "NoAuth",
    "Subscription",
    "SubscriptionStatus",
    # Deliveries
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "truncate",
]
