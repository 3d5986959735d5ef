"""Configuration management for Hookline."""

import logging
import warnings
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Hookline configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the HOOKLINE_ prefix. For example:
        HOOKLINE_QDRANT_URL=http://localhost:6333
        HOOKLINE_QUEUE_BACKEND=qdrant
        HOOKLINE_WORKER_CONCURRENCY=16
    """

    model_config = SettingsConfigDict(env_prefix="HOOKLINE_", extra="ignore")

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="hookline",
        description="Prefix for Qdrant collection names",
    )
    storage_max_scroll_limit: int = Field(
        default=10000,
        ge=100,
        le=100000,
        description=(
            "Maximum records fetched in a single scroll operation. "
            "Bounds history and stats queries for very busy subscriptions."
        ),
    )

    # Queue
    queue_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description=(
            "Delivery job queue: 'memory' (single process, lost on restart) or "
            "'qdrant' (durable, survives restarts)"
        ),
    )
    queue_lease_seconds: float = Field(
        default=120.0,
        gt=0,
        description=(
            "How long a consumed job stays invisible before it is redelivered. "
            "A redelivered job never interrupts an attempt that is still running."
        ),
    )
    attempt_grace_seconds: float = Field(
        default=30.0,
        gt=0,
        description=(
            "Added to the subscription timeout to get the deadline after which an "
            "unfinished attempt is considered abandoned and may be reclaimed"
        ),
    )
    queue_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Idle poll interval for the durable queue",
    )

    # Workers
    worker_concurrency: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Number of concurrent delivery workers",
    )

    # Retry policy
    retry_base_delay_ms: int = Field(
        default=5000,
        ge=1,
        description="Backoff delay before the first retry (doubles each attempt)",
    )
    retry_max_delay_ms: int = Field(
        default=300_000,
        ge=1,
        description="Upper bound for a single backoff delay",
    )

    # Delivery
    user_agent_product: str = Field(
        default="Hookline",
        description="Product name used in the 'User-Agent: <product>-Webhook/1.0' header",
    )
    response_body_max_chars: int = Field(
        default=1000,
        ge=0,
        description="Stored response bodies are truncated to this many characters",
    )
    url_validation_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout of the HEAD request used to validate subscription URLs",
    )
    delivery_retention_days: int = Field(
        default=30,
        ge=1,
        description="Successful deliveries older than this are eligible for purging",
    )

    # Circuit breaker
    circuit_half_open_enabled: bool = Field(
        default=False,
        description=(
            "Let a circuit_open subscription receive one probe delivery once its "
            "reset window has elapsed. Off by default: open circuits stay open "
            "until a subscription is reactivated."
        ),
    )
    failure_counting: Literal["attempt", "delivery"] = Field(
        default="delivery",
        description=(
            "Granularity of consecutive_failures: 'delivery' counts a delivery once "
            "when it fails terminally, 'attempt' counts every failed HTTP attempt"
        ),
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "Settings":
        """The backoff cap must not be below the base delay."""
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError(
                f"retry_max_delay_ms ({self.retry_max_delay_ms}) must be >= "
                f"retry_base_delay_ms ({self.retry_base_delay_ms})"
            )
        return self

    @model_validator(mode="after")
    def warn_on_volatile_queue(self) -> "Settings":
        """Warn when production runs without a durable queue."""
        if self.env == "production" and self.queue_backend == "memory":
            warnings.warn(
                "The in-memory delivery queue loses queued deliveries on restart. "
                "Set HOOKLINE_QUEUE_BACKEND=qdrant in production.",
                UserWarning,
                stacklevel=2,
            )
            logger.warning("In-memory delivery queue configured in production")
        return self

    @property
    def user_agent(self) -> str:
        """Value of the User-Agent header sent with every delivery."""
        return f"{self.user_agent_product}-Webhook/1.0"


settings = Settings()
