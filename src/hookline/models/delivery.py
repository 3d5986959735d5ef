"""Delivery models: one record per (subscription, triggered event) pair.

A delivery is created by the dispatcher and afterwards mutated only by the
worker that currently owns it. Its payload is a snapshot taken at creation
and is never recomputed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hookline.exceptions import InvalidTransitionError

from .base import generate_id, isoformat


class DeliveryStatus(str, Enum):
    """Lifecycle status of a delivery."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


TERMINAL_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.FAILED})

ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.IN_PROGRESS}),
    DeliveryStatus.IN_PROGRESS: frozenset(
        {DeliveryStatus.SUCCESS, DeliveryStatus.FAILED, DeliveryStatus.RETRY}
    ),
    DeliveryStatus.RETRY: frozenset({DeliveryStatus.PENDING}),
    DeliveryStatus.SUCCESS: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}


class Delivery(BaseModel):
    """Attempt-series delivering one event to one subscription.

    Attributes:
        id: Internal identifier.
        delivery_id: Externally referenceable identifier (X-Webhook-Delivery-ID).
        subscription_id: Subscription being delivered to.
        tenant_id: Tenant owning the subscription.
        event_type: Event type being delivered.
        event_id: ID of the triggering domain event.
        payload: Envelope snapshot, exactly what is serialized and signed.
        status: Lifecycle status.
        attempt_number: HTTP attempts made so far.
        max_attempts: Attempt budget; never exceeded by attempt_number.
        retry_after: When the next automatic attempt is due (status retry).
        job_id: Queue job currently responsible for the delivery. Jobs with
            another ID are stale and are dropped by workers.
        attempt_owner: Token of the worker running the current attempt.
        attempt_expires_at: When an unfinished attempt counts as abandoned.
        headers_sent: Request headers of the last attempt, credentials masked.
        response_status_code: HTTP status of the last attempt.
        response_headers: Response headers of the last attempt.
        response_body: Response body of the last attempt (truncated).
        response_time_ms: Round trip of the last attempt.
        error_message: Error of the last failed attempt.
        error_details: Classification of the last error.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    delivery_id: str = Field(default_factory=lambda: str(uuid4()))
    subscription_id: str = Field(description="Subscription being delivered to")
    tenant_id: str = Field(description="Tenant owning the subscription")
    event_type: str = Field(description="Event type")
    event_id: str = Field(description="ID of the triggering domain event")
    payload: dict[str, Any] = Field(description="Envelope snapshot")

    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING)
    attempt_number: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=1, ge=1)
    retry_after: datetime | None = Field(default=None)
    job_id: str | None = Field(default=None)
    attempt_owner: str | None = Field(default=None)
    attempt_expires_at: datetime | None = Field(default=None)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    request_sent_at: datetime | None = Field(default=None)
    response_received_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)

    headers_sent: dict[str, str] | None = Field(default=None)
    response_status_code: int | None = Field(default=None)
    response_headers: dict[str, str] | None = Field(default=None)
    response_body: str | None = Field(default=None)
    response_time_ms: int | None = Field(default=None, ge=0)
    error_message: str | None = Field(default=None)
    error_details: dict[str, Any] | None = Field(default=None)

    @model_validator(mode="after")
    def _check_attempt_budget(self) -> Delivery:
        if self.attempt_number > self.max_attempts:
            raise ValueError(
                f"attempt_number ({self.attempt_number}) exceeds "
                f"max_attempts ({self.max_attempts})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self.attempt_number

    def transition_to(self, status: DeliveryStatus, now: datetime) -> Delivery:
        """Move to ``status``, enforcing the lifecycle graph."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, status.value)
        if self.status == DeliveryStatus.IN_PROGRESS:
            self.attempt_owner = None
            self.attempt_expires_at = None
        self.status = status
        self.updated_at = now
        if status in TERMINAL_STATUSES:
            self.completed_at = now
        return self

    def start_attempt(
        self,
        now: datetime,
        owner: str | None = None,
        expires_at: datetime | None = None,
    ) -> Delivery:
        """Claim the delivery for an attempt (retry goes back through pending).

        Args:
            now: Current time.
            owner: Token identifying the claiming worker.
            expires_at: Deadline after which the attempt may be reclaimed.
        """
        if self.status == DeliveryStatus.RETRY:
            self.transition_to(DeliveryStatus.PENDING, now)
            self.retry_after = None
        self.transition_to(DeliveryStatus.IN_PROGRESS, now)
        self.request_sent_at = now
        self.attempt_owner = owner
        self.attempt_expires_at = expires_at
        return self

    def attempt_abandoned(self, now: datetime) -> bool:
        """Whether an in-progress attempt has outlived its deadline."""
        return self.status == DeliveryStatus.IN_PROGRESS and (
            self.attempt_expires_at is None or self.attempt_expires_at <= now
        )

    def record_response(
        self,
        status_code: int,
        headers: dict[str, str],
        body: str,
        response_time_ms: int,
        now: datetime,
        max_body_chars: int = 1000,
    ) -> Delivery:
        """Store the observed HTTP response of the current attempt."""
        self._count_attempt()
        self.response_received_at = now
        self.response_status_code = status_code
        self.response_headers = headers
        self.response_body = truncate(body, max_body_chars)
        self.response_time_ms = response_time_ms
        if 200 <= status_code < 300:
            self.error_message = None
            self.error_details = None
        else:
            self.error_message = f"HTTP {status_code}"
            self.error_details = {
                "type": "http_error",
                "message": self.error_message,
                "network_error": False,
                "timestamp": isoformat(now),
            }
        return self

    def record_transport_error(
        self,
        error_type: str,
        message: str,
        response_time_ms: int,
        now: datetime,
    ) -> Delivery:
        """Store a transport-level failure (DNS, connect, TLS, timeout)."""
        self._count_attempt()
        self.response_status_code = None
        self.response_headers = None
        self.response_body = None
        self.response_time_ms = response_time_ms
        self.error_message = message
        self.error_details = {
            "type": error_type,
            "message": message,
            "network_error": True,
            "timestamp": isoformat(now),
        }
        return self

    def record_configuration_error(self, message: str, now: datetime) -> Delivery:
        """Store a configuration problem that makes delivery impossible."""
        self.error_message = message
        self.error_details = {
            "type": "configuration_error",
            "message": message,
            "network_error": False,
            "timestamp": isoformat(now),
        }
        return self

    def mark_success(self, now: datetime) -> Delivery:
        return self.transition_to(DeliveryStatus.SUCCESS, now)

    def mark_failed(self, now: datetime) -> Delivery:
        """Mark delivery as failed (no more automatic retries)."""
        return self.transition_to(DeliveryStatus.FAILED, now)

    def mark_retrying(self, retry_after: datetime, now: datetime) -> Delivery:
        self.transition_to(DeliveryStatus.RETRY, now)
        self.retry_after = retry_after
        return self

    def rearm(self, now: datetime, job_id: str | None = None) -> Delivery:
        """Operator retry: back to pending, to be attempted right away.

        A terminal delivery gets exactly one more attempt. A pending or
        retrying delivery keeps its remaining automatic attempts and only
        loses its backoff wait. A delivery that is in flight cannot be
        re-armed.
        """
        if self.status == DeliveryStatus.IN_PROGRESS:
            raise InvalidTransitionError(self.status.value, DeliveryStatus.PENDING.value)
        if self.is_terminal:
            self.max_attempts = self.attempt_number + 1
        self.status = DeliveryStatus.PENDING
        self.retry_after = None
        self.completed_at = None
        self.job_id = job_id
        self.updated_at = now
        return self

    def reclaim(self, now: datetime) -> Delivery:
        """Release an abandoned attempt back to pending.

        Only allowed once the attempt deadline has passed. An attempt that
        never recorded an outcome does not count against the budget.
        """
        if not self.attempt_abandoned(now):
            raise InvalidTransitionError(self.status.value, DeliveryStatus.PENDING.value)
        self.status = DeliveryStatus.PENDING
        self.attempt_owner = None
        self.attempt_expires_at = None
        self.updated_at = now
        return self

    def _count_attempt(self) -> None:
        if self.attempt_number >= self.max_attempts:
            raise InvalidTransitionError(
                f"attempt {self.attempt_number}/{self.max_attempts}", "another attempt"
            )
        self.attempt_number += 1


def truncate(text: str, max_chars: int) -> str:
    """Cap stored text, marking that it was cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class DeliveryStats(BaseModel):
    """Aggregate view of a subscription's recent deliveries."""

    model_config = ConfigDict(extra="forbid")

    subscription_id: str
    window_days: int = Field(ge=1)
    total: int = Field(default=0, ge=0)
    successful: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    in_progress: int = Field(default=0, ge=0)
    retrying: int = Field(default=0, ge=0)
    status_codes: dict[str, int] = Field(default_factory=dict)
    avg_response_time_ms: int = Field(default=0, ge=0)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "truncate",
]
