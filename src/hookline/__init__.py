"""Hookline: outbound webhook delivery.

Delivers domain events to tenant-configured HTTP endpoints with HMAC-SHA256
signatures, capped exponential backoff retries and a per-subscription
circuit breaker.

Quick Start:
    from hookline import WebhookEngine

    async with WebhookEngine.create() as engine:
        subscription = await engine.create_subscription(
            tenant_id="company_1",
            url="https://example.com/hooks",
            events=["call.completed"],
        )
        await engine.trigger("company_1", "call.completed", "call_123", {"duration": 42})
        await engine.start_workers()

Core Types:
    - Subscription: Tenant-configured endpoint, policy and runtime counters
    - Delivery: One event delivered to one subscription, with its attempts
    - DeliveryJob: Queue entry asking a worker for one attempt
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Engine
from .engine import WebhookEngine

# Exceptions
from .exceptions import (
    ConfigurationError,
    HooklineError,
    InvalidTransitionError,
    NotFoundError,
    QueueError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    delivery_context,
    get_logger,
    logger,
    unbind_context,
)

# Models
from .models import (
    ApiKeyAuth,
    BasicAuth,
    BearerAuth,
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    EventType,
    NoAuth,
    Subscription,
    SubscriptionStatus,
    WebhookEnvelope,
)
from .queue import DeliveryJob, DeliveryQueue

# Signatures (receiver side)
from .webhooks import compute_signature, verify_signature

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Engine
    "WebhookEngine",
    # Exceptions
    "HooklineError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "QueueError",
    "ConfigurationError",
    "InvalidTransitionError",
    # Logging
    "configure_logging",
    "get_logger",
    "logger",
    "bind_context",
    "clear_context",
    "unbind_context",
    "delivery_context",
    # Models
    "Subscription",
    "SubscriptionStatus",
    "NoAuth",
    "BasicAuth",
    "BearerAuth",
    "ApiKeyAuth",
    "Delivery",
    "DeliveryStatus",
    "DeliveryStats",
    "EventType",
    "WebhookEnvelope",
    "DeliveryJob",
    "DeliveryQueue",
    # Signatures
    "compute_signature",
    "verify_signature",
]
