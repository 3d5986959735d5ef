"""Per-subscription circuit breaker.

Pure functions over a :class:`Subscription`. The worker applies them inside
the store's atomic subscription update, so concurrent outcomes for the same
subscription never lose a count.

    active --(consecutive_failures >= threshold)--> circuit_open
    circuit_open --(successful attempt)--> active
    circuit_open --(reactivate)--> active
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from hookline.models import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


def record_success(subscription: Subscription, now: datetime) -> bool:
    """Reset the failure streak; close an open circuit.

    Returns:
        True if the circuit was closed by this success.
    """
    subscription.consecutive_failures = 0
    if subscription.status != SubscriptionStatus.CIRCUIT_OPEN:
        return False
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.circuit_opened_at = None
    subscription.updated_at = now
    logger.info("Circuit closed for subscription %s", subscription.id)
    return True


def record_failure(subscription: Subscription, now: datetime) -> bool:
    """Count a failure; open the circuit when the threshold is reached.

    ``circuit_opened_at`` is only set on the transition, further failures
    while open leave it untouched. An inactive subscription is never moved
    to circuit_open.

    Returns:
        True if the circuit was opened by this failure.
    """
    subscription.consecutive_failures += 1
    if subscription.status != SubscriptionStatus.ACTIVE:
        return False
    if subscription.consecutive_failures < subscription.circuit_breaker_threshold:
        return False
    subscription.status = SubscriptionStatus.CIRCUIT_OPEN
    subscription.circuit_opened_at = now
    subscription.updated_at = now
    logger.warning(
        "Circuit opened for subscription %s after %d consecutive failures",
        subscription.id,
        subscription.consecutive_failures,
    )
    return True


def probe_due(subscription: Subscription, now: datetime) -> bool:
    """Whether an open circuit has waited long enough for a half-open probe."""
    if subscription.status != SubscriptionStatus.CIRCUIT_OPEN:
        return False
    if subscription.circuit_opened_at is None:
        return True
    reset_after = timedelta(seconds=subscription.circuit_breaker_reset_after_seconds)
    return now >= subscription.circuit_opened_at + reset_after


def allows_dispatch(
    subscription: Subscription,
    now: datetime,
    half_open_enabled: bool = False,
) -> bool:
    """Whether the dispatcher may create a delivery for this subscription."""
    if subscription.status == SubscriptionStatus.ACTIVE:
        return True
    return half_open_enabled and probe_due(subscription, now)


def start_probe(subscription: Subscription, now: datetime) -> None:
    """Restart the reset window so only one probe goes out per window."""
    subscription.circuit_opened_at = now
    subscription.updated_at = now


def reactivate(subscription: Subscription, now: datetime) -> None:
    """Manually close the circuit (or re-enable) and clear the failure streak."""
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.consecutive_failures = 0
    subscription.circuit_opened_at = None
    subscription.updated_at = now
