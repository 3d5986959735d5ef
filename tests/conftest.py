"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from hookline.config import Settings
from hookline.engine import WebhookEngine
from hookline.models import Subscription
from hookline.queue import InMemoryDeliveryQueue
from hookline.storage import HooklineStorage

# Make conftest helpers importable from test modules
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

START = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock; call it to read the time, advance() to move it."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now


class Endpoint:
    """Scripted webhook receiver for httpx.MockTransport.

    Each request consumes the next scripted outcome: an int is returned as
    that status code, an exception is raised as a transport failure. Once
    the script is empty every request gets ``default_status``.
    """

    def __init__(self, default_status: int = 200) -> None:
        self.default_status = default_status
        self.script: list[int | Exception] = []
        self.requests: list[httpx.Request] = []

    def respond(self, *outcomes: int | Exception) -> Endpoint:
        self.script.extend(outcomes)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.script.pop(0) if self.script else self.default_status
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text=f"status {outcome}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(env="test", collection_prefix="test", log_format="text")


@pytest.fixture
async def storage():
    """In-memory storage using qdrant-client's local mode."""
    store = HooklineStorage(url=":memory:", prefix="test")
    await store.initialize()

    yield store

    await store.close()


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint()


@pytest.fixture
async def http_client(endpoint: Endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler))

    yield client

    await client.aclose()


@pytest.fixture
def queue(clock: FakeClock) -> InMemoryDeliveryQueue:
    return InMemoryDeliveryQueue(lease_seconds=120, clock=clock)


@pytest.fixture
def engine(
    storage: HooklineStorage,
    queue: InMemoryDeliveryQueue,
    http_client: httpx.AsyncClient,
    settings: Settings,
    clock: FakeClock,
) -> WebhookEngine:
    return WebhookEngine(
        storage=storage,
        queue=queue,
        http_client=http_client,
        settings=settings,
        clock=clock,
    )


def make_subscription(**overrides: object) -> Subscription:
    """Build a deliverable subscription for tests."""
    fields: dict[str, object] = {
        "tenant_id": "company_1",
        "name": "CRM sync",
        "url": "https://hooks.example.com/receive",
        "events": ["call.completed", "text.received"],
        "signing_secret": "s3cret",
        "created_at": START,
        "updated_at": START,
    }
    fields.update(overrides)
    return Subscription(**fields)  # type: ignore[arg-type]
