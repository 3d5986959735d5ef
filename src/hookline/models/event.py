"""Event types and the envelope delivered to subscribers."""

from __future__ import annotations

import copy
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import isoformat


class EventType(str, Enum):
    """Domain events the platform emits."""

    CALL_STARTED = "call.started"
    CALL_ANSWERED = "call.answered"
    CALL_COMPLETED = "call.completed"
    CALL_FAILED = "call.failed"
    TEXT_RECEIVED = "text.received"
    TEXT_SENT = "text.sent"
    FORM_SUBMITTED = "form.submitted"
    VOICEMAIL_RECEIVED = "voicemail.received"
    RECORDING_READY = "recording.ready"
    RECORDING_COMPLETED = "recording.completed"


KNOWN_EVENT_TYPES: list[str] = [e.value for e in EventType]

# Synthetic event used by test sends. Not part of the default filter, so
# subscriptions only receive it through an explicit test delivery.
TEST_EVENT_TYPE = "test.webhook"


class WebhookEnvelope(BaseModel):
    """Body of every webhook request.

    Field order is part of the wire format: the signature covers the compact
    JSON serialization ``{"event", "event_id", "timestamp", "data"}``.
    """

    model_config = ConfigDict(extra="forbid")

    event: str = Field(description="Event type")
    event_id: str = Field(description="ID of the triggering domain event")
    timestamp: str = Field(description="ISO-8601 time the event was triggered")
    data: dict[str, Any] = Field(default_factory=dict, description="Event payload")

    @classmethod
    def build(
        cls,
        event_type: str,
        event_id: str,
        data: dict[str, Any],
        triggered_at: datetime,
    ) -> WebhookEnvelope:
        """Wrap a deep copy of ``data`` so later mutation by the caller is not seen."""
        return cls(
            event=event_type,
            event_id=event_id,
            timestamp=isoformat(triggered_at),
            data=copy.deepcopy(data),
        )

    def to_payload(self) -> dict[str, Any]:
        """Plain dict snapshot stored on the delivery."""
        return self.model_dump(mode="json")


__all__ = [
    "KNOWN_EVENT_TYPES",
    "TEST_EVENT_TYPE",
    "EventType",
    "WebhookEnvelope",
]
