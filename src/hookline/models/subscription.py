"""Subscription models: tenant-configured webhook endpoints.

A subscription is created and edited by the management layer. The delivery
engine reads it to decide where and how to deliver, and mutates only its
runtime counters and circuit breaker state.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from .base import generate_id
from .event import KNOWN_EVENT_TYPES


class SubscriptionStatus(str, Enum):
    """Runtime status of a subscription."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    CIRCUIT_OPEN = "circuit_open"


class NoAuth(BaseModel):
    """No authentication header is sent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["none"] = "none"

    def headers(self) -> dict[str, str]:
        return {}


class BasicAuth(BaseModel):
    """HTTP Basic authentication.

    ``credentials`` is sent verbatim after ``Basic``; build it from a login
    with :meth:`from_login`.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["basic"] = "basic"
    credentials: str = Field(min_length=1, description="base64(username:password)")

    @classmethod
    def from_login(cls, username: str, password: str) -> BasicAuth:
        """Encode a username/password pair."""
        token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        return cls(credentials=token)

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Basic {self.credentials}"}


class BearerAuth(BaseModel):
    """Bearer token authentication."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["bearer"] = "bearer"
    token: str = Field(min_length=1)

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class ApiKeyAuth(BaseModel):
    """API key sent in the X-API-Key header."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["api_key"] = "api_key"
    key: str = Field(min_length=1)

    def headers(self) -> dict[str, str]:
        return {"X-API-Key": self.key}


AuthConfig = Annotated[
    NoAuth | BasicAuth | BearerAuth | ApiKeyAuth,
    Field(discriminator="kind"),
]

# Header names whose values are credentials; masked before headers are stored.
SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key"})


class Subscription(BaseModel):
    """A webhook endpoint registration owned by a tenant.

    Attributes:
        id: Unique identifier for this subscription.
        tenant_id: Tenant (company) that owns the subscription.
        name: Human-readable name.
        url: Endpoint that receives events.
        events: Event types this subscription receives.
        signing_secret: Key for the HMAC-SHA256 payload signature.
        auth: Authentication variant applied to every request.
        custom_headers: Extra headers sent with every request.
        timeout_seconds: HTTP timeout per attempt.
        max_retries: Automatic retries after the first attempt.
        retry_on_failure: Whether failed attempts are retried at all.
        circuit_breaker_threshold: Consecutive failures that open the circuit.
        circuit_breaker_reset_after_seconds: Wait before a half-open probe.
        status: active, inactive, or circuit_open.
        consecutive_failures: Failures since the last success.
        circuit_opened_at: When the circuit last opened.
        last_triggered_at: When a delivery attempt last completed.
        last_status_code: HTTP status of the last completed attempt.
        total_deliveries: Completed delivery attempts.
        successful_deliveries: Successful delivery attempts.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("sub"))
    tenant_id: str = Field(description="Tenant that owns this subscription")
    name: str | None = Field(default=None, description="Human-readable name")
    description: str | None = Field(default=None, description="Optional description")
    url: HttpUrl = Field(description="Endpoint to receive events")
    events: list[str] = Field(
        default_factory=lambda: list(KNOWN_EVENT_TYPES),
        description="Event types to subscribe to",
    )

    signing_secret: str | None = Field(
        default=None,
        description="Shared secret for HMAC-SHA256 signatures (required to deliver)",
    )
    auth: AuthConfig = Field(default_factory=NoAuth, description="Authentication variant")
    custom_headers: dict[str, str] = Field(default_factory=dict)

    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Per-attempt timeout")
    max_retries: int = Field(default=3, ge=0, le=20, description="Retries after first attempt")
    retry_on_failure: bool = Field(default=True)
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_reset_after_seconds: int = Field(default=300, ge=1)

    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE)
    consecutive_failures: int = Field(default=0, ge=0)
    circuit_opened_at: datetime | None = Field(default=None)
    last_triggered_at: datetime | None = Field(default=None)
    last_status_code: int | None = Field(default=None)
    total_deliveries: int = Field(default=0, ge=0)
    successful_deliveries: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def max_attempts(self) -> int:
        """Total HTTP attempts a delivery to this subscription may make."""
        return self.max_retries + 1

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this subscription filters in the given event type."""
        return event_type in self.events


# Fields the management layer may change; runtime state belongs to the engine
# and the signing secret is fixed at creation.
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "url",
        "events",
        "auth",
        "custom_headers",
        "timeout_seconds",
        "max_retries",
        "retry_on_failure",
        "circuit_breaker_threshold",
        "circuit_breaker_reset_after_seconds",
        "status",
    }
)


__all__ = [
    "UPDATABLE_FIELDS",
    "ApiKeyAuth",
    "AuthConfig",
    "BasicAuth",
    "BearerAuth",
    "NoAuth",
    "SENSITIVE_HEADERS",
    "Subscription",
    "SubscriptionStatus",
]
