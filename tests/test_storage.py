"""Unit tests for Hookline storage layer.

These tests use qdrant-client's local in-memory mode for fast, isolated testing.
No external Qdrant server is required.
"""

import asyncio
from datetime import timedelta

import pytest
from conftest import START, make_subscription

from hookline.exceptions import StorageError
from hookline.models import BearerAuth, Delivery, DeliveryStatus, SubscriptionStatus
from hookline.storage import HooklineStorage


def make_delivery(subscription_id: str = "sub_1", **overrides) -> Delivery:
    fields = {
        "subscription_id": subscription_id,
        "tenant_id": "company_1",
        "event_type": "call.completed",
        "event_id": "call_1",
        "payload": {"event": "call.completed", "data": {}},
        "max_attempts": 4,
        "created_at": START,
        "updated_at": START,
    }
    fields.update(overrides)
    return Delivery(**fields)


class TestHooklineStorageInit:
    """Tests for storage initialization."""

    async def test_initialize_creates_collections(self, storage: HooklineStorage):
        """initialize() should create all required collections."""
        collections = await storage.client.get_collections()
        names = {c.name for c in collections.collections}
        assert {"test_subscriptions", "test_deliveries", "test_delivery_jobs"} <= names

    async def test_uninitialized_client_raises(self):
        store = HooklineStorage(url=":memory:", prefix="test")
        with pytest.raises(StorageError):
            _ = store.client

    def test_point_ids_are_deterministic_uuids(self):
        point_id = HooklineStorage._key_to_point_id("subscriptions/sub_1")
        assert point_id == HooklineStorage._key_to_point_id("subscriptions/sub_1")
        assert len(point_id) == 36


class TestSubscriptionStorage:
    """Tests for subscription storage."""

    async def test_store_and_get(self, storage: HooklineStorage):
        sub = make_subscription(auth=BearerAuth(token="tok"), custom_headers={"X-Env": "prod"})
        await storage.store_subscription(sub)

        retrieved = await storage.get_subscription(sub.id)
        assert retrieved is not None
        assert retrieved.url == sub.url
        assert retrieved.auth == BearerAuth(token="tok")
        assert retrieved.custom_headers == {"X-Env": "prod"}
        assert retrieved.signing_secret == "s3cret"

    async def test_get_with_wrong_tenant_returns_none(self, storage: HooklineStorage):
        sub = make_subscription()
        await storage.store_subscription(sub)
        assert await storage.get_subscription(sub.id, tenant_id="company_2") is None

    async def test_get_missing_returns_none(self, storage: HooklineStorage):
        assert await storage.get_subscription("sub_missing") is None

    async def test_list_filters_by_tenant_event_and_status(self, storage: HooklineStorage):
        calls = make_subscription(events=["call.completed"])
        texts = make_subscription(events=["text.received"], created_at=START + timedelta(1))
        paused = make_subscription(status=SubscriptionStatus.INACTIVE)
        other = make_subscription(tenant_id="company_2")
        for sub in (calls, texts, paused, other):
            await storage.store_subscription(sub)

        all_subs = await storage.list_subscriptions("company_1")
        assert {s.id for s in all_subs} == {calls.id, texts.id, paused.id}

        for_calls = await storage.get_subscriptions_for_event("company_1", "call.completed")
        assert {s.id for s in for_calls} == {calls.id, paused.id}

        inactive = await storage.list_subscriptions("company_1", status="inactive")
        assert [s.id for s in inactive] == [paused.id]

    async def test_update_subscription_validates(self, storage: HooklineStorage):
        sub = make_subscription()
        await storage.store_subscription(sub)

        updated = await storage.update_subscription(sub.id, name="Renamed", max_retries=5)
        assert updated.name == "Renamed"
        assert updated.max_retries == 5

        with pytest.raises(ValueError):
            await storage.update_subscription(sub.id, max_retries=99)
        assert (await storage.get_subscription(sub.id)).max_retries == 5

    async def test_update_missing_returns_none(self, storage: HooklineStorage):
        assert await storage.update_subscription("sub_missing", name="x") is None

    async def test_concurrent_state_updates_are_not_lost(self, storage: HooklineStorage):
        """Read-modify-write cycles on one subscription are serialized."""
        sub = make_subscription()
        await storage.store_subscription(sub)

        def bump(s):
            s.total_deliveries += 1

        await asyncio.gather(*(storage.update_subscription_state(sub.id, bump) for _ in range(20)))

        assert (await storage.get_subscription(sub.id)).total_deliveries == 20

    async def test_delete_removes_deliveries(self, storage: HooklineStorage):
        sub = make_subscription()
        await storage.store_subscription(sub)
        await storage.log_delivery(make_delivery(sub.id))

        assert await storage.delete_subscription(sub.id)
        assert await storage.get_subscription(sub.id) is None
        assert await storage.count_deliveries(subscription_id=sub.id) == 0
        assert not await storage.delete_subscription(sub.id)


class TestDeliveryStorage:
    """Tests for delivery storage and queries."""

    async def test_log_and_get(self, storage: HooklineStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        retrieved = await storage.get_delivery(delivery.id)
        assert retrieved.model_dump() == delivery.model_dump()
        assert await storage.get_delivery(delivery.id, tenant_id="company_2") is None

    async def test_update_delivery(self, storage: HooklineStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)
        delivery.start_attempt(START)
        delivery.record_response(200, {}, "ok", 12, START)
        delivery.mark_success(START)
        await storage.update_delivery(delivery)

        retrieved = await storage.get_delivery(delivery.id)
        assert retrieved.status == DeliveryStatus.SUCCESS
        assert retrieved.attempt_number == 1

    async def test_history_newest_first_with_limit(self, storage: HooklineStorage):
        for minutes in range(5):
            await storage.log_delivery(
                make_delivery(
                    event_id=f"call_{minutes}",
                    created_at=START + timedelta(minutes=minutes),
                )
            )

        history = await storage.get_delivery_history("sub_1", limit=3)
        assert [d.event_id for d in history] == ["call_4", "call_3", "call_2"]

    async def test_stats(self, storage: HooklineStorage):
        now = START + timedelta(days=1)
        ok = make_delivery(
            status=DeliveryStatus.SUCCESS, response_status_code=200, response_time_ms=100
        )
        ok2 = make_delivery(
            status=DeliveryStatus.SUCCESS, response_status_code=200, response_time_ms=51
        )
        bad = make_delivery(
            status=DeliveryStatus.FAILED,
            attempt_number=4,
            response_status_code=500,
            response_time_ms=30,
        )
        waiting = make_delivery(status=DeliveryStatus.RETRY, attempt_number=1)
        old = make_delivery(status=DeliveryStatus.SUCCESS, created_at=START - timedelta(days=30))
        for delivery in (ok, ok2, bad, waiting, old):
            await storage.log_delivery(delivery)

        stats = await storage.get_delivery_stats("sub_1", now=now, window_days=7)

        assert stats.total == 4
        assert stats.successful == 2
        assert stats.failed == 1
        assert stats.retrying == 1
        assert stats.status_codes == {"200": 2, "500": 1}
        assert stats.avg_response_time_ms == 60

    async def test_queries_see_records_beyond_scroll_cap(self):
        """History and stats are not limited to the first scroll page."""
        store = HooklineStorage(url=":memory:", prefix="test", max_scroll_limit=10)
        await store.initialize()
        try:
            for n in range(30):
                await store.log_delivery(
                    make_delivery(
                        event_id=f"call_{n}",
                        status=DeliveryStatus.SUCCESS,
                        response_status_code=200,
                        response_time_ms=10,
                        created_at=START + timedelta(seconds=n),
                    )
                )

            history = await store.get_delivery_history("sub_1", limit=5)
            stats = await store.get_delivery_stats("sub_1", now=START + timedelta(hours=1))
        finally:
            await store.close()

        assert [d.event_id for d in history] == [f"call_{n}" for n in range(29, 24, -1)]
        assert stats.total == 30
        assert stats.successful == 30
        assert stats.status_codes == {"200": 30}
        assert stats.avg_response_time_ms == 10

    async def test_history_status_filter(self, storage: HooklineStorage):
        await storage.log_delivery(make_delivery(event_id="ok", status=DeliveryStatus.SUCCESS))
        await storage.log_delivery(make_delivery(event_id="bad", status=DeliveryStatus.FAILED))

        history = await storage.get_delivery_history("sub_1", status="failed")
        assert [d.event_id for d in history] == ["bad"]

    async def test_purge_only_old_successes(self, storage: HooklineStorage):
        cutoff = START - timedelta(days=30)
        old_ok = make_delivery(status=DeliveryStatus.SUCCESS, created_at=cutoff - timedelta(10))
        old_failed = make_delivery(status=DeliveryStatus.FAILED, created_at=cutoff - timedelta(10))
        new_ok = make_delivery(status=DeliveryStatus.SUCCESS)
        for delivery in (old_ok, old_failed, new_ok):
            await storage.log_delivery(delivery)

        deleted = await storage.purge_deliveries(created_before=cutoff)

        assert deleted == 1
        assert await storage.get_delivery(old_ok.id) is None
        assert await storage.get_delivery(old_failed.id) is not None
        assert await storage.get_delivery(new_ok.id) is not None


class TestDeliveryOwnership:
    """Tests for atomic claims and owner-checked writes."""

    async def test_update_state_persists_when_accepted(self, storage: HooklineStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        def claim(d: Delivery) -> bool:
            d.start_attempt(START, owner="w1")
            return True

        claimed = await storage.update_delivery_state(delivery.id, claim)

        assert claimed.status == DeliveryStatus.IN_PROGRESS
        assert (await storage.get_delivery(delivery.id)).attempt_owner == "w1"

    async def test_update_state_declined_writes_nothing(self, storage: HooklineStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        def decline(d: Delivery) -> bool:
            d.status = DeliveryStatus.FAILED
            return False

        assert await storage.update_delivery_state(delivery.id, decline) is None
        assert (await storage.get_delivery(delivery.id)).status == DeliveryStatus.PENDING
        assert await storage.update_delivery_state("dlv_missing", lambda d: True) is None

    async def test_concurrent_claims_have_one_winner(self, storage: HooklineStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        def claim(owner: str):
            def apply(d: Delivery) -> bool:
                if d.status != DeliveryStatus.PENDING:
                    return False
                d.start_attempt(START, owner=owner)
                return True

            return apply

        results = await asyncio.gather(
            *(storage.update_delivery_state(delivery.id, claim(f"w{n}")) for n in range(5))
        )

        assert sum(result is not None for result in results) == 1

    async def test_write_requires_current_owner(self, storage: HooklineStorage):
        delivery = make_delivery()
        delivery.start_attempt(START, owner="w1")
        await storage.log_delivery(delivery)

        outcome = delivery.model_copy(deep=True)
        outcome.record_response(200, {}, "ok", 5, START)
        outcome.mark_success(START)

        assert not await storage.update_delivery_if_owned(outcome, "w2")
        assert (await storage.get_delivery(delivery.id)).status == DeliveryStatus.IN_PROGRESS
        assert await storage.update_delivery_if_owned(outcome, "w1")
        assert (await storage.get_delivery(delivery.id)).status == DeliveryStatus.SUCCESS
        assert not await storage.update_delivery_if_owned(outcome, "w1")
