"""Webhook delivery for Hookline.

Provides event fan-out, HMAC-signed delivery, backoff retry and a
per-subscription circuit breaker.

Example:
    ```python
    from hookline.webhooks import Dispatcher, compute_signature, verify_signature

    dispatcher = Dispatcher(storage, queue)
    await dispatcher.trigger("company_1", "call.completed", "call_123", {"duration": 42})

    # Receiver side
    assert verify_signature(raw_body, secret, request.headers["X-Webhook-Signature"])
    ```
"""

from . import circuit
from .dispatcher import Dispatcher
from .retry import RetryScheduler, backoff_delay_ms
from .signing import compute_signature, serialize_payload, verify_signature
from .worker import DeliveryWorker, DeliveryWorkerPool, mask_headers

__all__ = [
    "DeliveryWorker",
    "DeliveryWorkerPool",
    "Dispatcher",
    "RetryScheduler",
    "backoff_delay_ms",
    "circuit",
    "compute_signature",
    "mask_headers",
    "serialize_payload",
    "verify_signature",
]
