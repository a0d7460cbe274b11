"""Tests for WebhookStorage on an in-process Qdrant."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from unittest.mock import patch

import pytest

from dealhook.models import Delivery, Subscription, WebhookEnvelope, utc_now
from dealhook.storage import WebhookStorage
from dealhook.storage.base import StorageBase


def _delivery(subscription: Subscription, **overrides: object) -> Delivery:
    delivery = Delivery(
        subscription_id=subscription.id,
        event=str(overrides.pop("event", "opportunity.won")),
        payload="{}",
    )
    envelope = WebhookEnvelope.build(delivery.event, {}, subscription.id, delivery.id)
    fields = delivery.model_dump()
    fields["payload"] = envelope.to_json()
    fields.update(overrides)
    return Delivery.model_validate(fields)


class TestLifecycle:
    """Tests for storage initialization."""

    def test_client_requires_initialize(self) -> None:
        storage = WebhookStorage(url=":memory:")
        with pytest.raises(RuntimeError, match="not initialized"):
            _ = storage.client

    @pytest.mark.asyncio
    async def test_context_manager(self) -> None:
        async with WebhookStorage(url=":memory:", prefix="ctx") as storage:
            collections = await storage.client.get_collections()
            names = {c.name for c in collections.collections}
        assert names == {"ctx_webhooks", "ctx_webhook_deliveries"}

    def test_point_id_is_deterministic_uuid(self) -> None:
        first = StorageBase._point_id("dlv_abc")
        assert first == StorageBase._point_id("dlv_abc")
        assert first != StorageBase._point_id("dlv_abd")
        assert [len(part) for part in first.split("-")] == [8, 4, 4, 4, 12]


class TestSubscriptions:
    """Tests for the subscription registry."""

    @pytest.mark.asyncio
    async def test_store_and_get(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        subscription = make_subscription(custom_headers={"X-Tenant": "acme"})
        await storage.store_subscription(subscription)

        loaded = await storage.get_subscription(subscription.id)

        assert loaded == subscription

    @pytest.mark.asyncio
    async def test_get_missing(self, storage: WebhookStorage) -> None:
        assert await storage.get_subscription("whk_missing") is None

    @pytest.mark.asyncio
    async def test_for_event_filters_events_and_active(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        won = make_subscription(events=["opportunity.won", "opportunity.lost"])
        created_only = make_subscription(events=["opportunity.created"])
        inactive = make_subscription(events=["opportunity.won"], active=False)
        for subscription in (won, created_only, inactive):
            await storage.store_subscription(subscription)

        matches = await storage.get_subscriptions_for_event("opportunity.won")

        assert [s.id for s in matches] == [won.id]
        assert await storage.get_subscriptions_for_event("opportunity.deleted") == []

    @pytest.mark.asyncio
    async def test_list_and_count(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        base = utc_now()
        subscriptions = [
            make_subscription(created_at=base - timedelta(minutes=i), active=i != 1)
            for i in range(3)
        ]
        for subscription in subscriptions:
            await storage.store_subscription(subscription)

        listed = await storage.list_subscriptions()
        assert [s.id for s in listed] == [s.id for s in subscriptions]

        page = await storage.list_subscriptions(limit=1, offset=1)
        assert [s.id for s in page] == [subscriptions[1].id]

        active = await storage.list_subscriptions(active=True)
        assert {s.id for s in active} == {subscriptions[0].id, subscriptions[2].id}

        assert await storage.count_subscriptions() == 3
        assert await storage.count_subscriptions(active=False) == 1

    @pytest.mark.asyncio
    async def test_update(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        subscription = make_subscription()
        await storage.store_subscription(subscription)

        updated = await storage.update_subscription(
            subscription.id, url="https://new.example.com/hook", retry_count=5
        )

        assert updated is not None
        assert str(updated.url) == "https://new.example.com/hook"
        assert updated.retry_count == 5
        assert updated.created_at == subscription.created_at
        assert updated.updated_at >= subscription.updated_at
        assert await storage.get_subscription(subscription.id) == updated

    @pytest.mark.asyncio
    async def test_update_missing(self, storage: WebhookStorage) -> None:
        assert await storage.update_subscription("whk_missing", active=False) is None

    @pytest.mark.asyncio
    async def test_delete_cascades_deliveries(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        doomed = make_subscription()
        kept = make_subscription()
        await storage.store_subscription(doomed)
        await storage.store_subscription(kept)
        await storage.create_delivery(_delivery(doomed))
        await storage.create_delivery(_delivery(doomed))
        survivor = _delivery(kept)
        await storage.create_delivery(survivor)

        assert await storage.delete_subscription(doomed.id) is True

        assert await storage.get_subscription(doomed.id) is None
        assert await storage.count_deliveries(subscription_id=doomed.id) == 0
        assert await storage.get_delivery(survivor.id) is not None

    @pytest.mark.asyncio
    async def test_delete_missing(self, storage: WebhookStorage) -> None:
        assert await storage.delete_subscription("whk_missing") is False


class TestDeliveries:
    """Tests for the delivery ledger."""

    @pytest.mark.asyncio
    async def test_create_and_get(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        delivery = _delivery(make_subscription())
        await storage.create_delivery(delivery)

        assert await storage.get_delivery(delivery.id) == delivery

    @pytest.mark.asyncio
    async def test_update_patch(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        delivery = _delivery(make_subscription())
        await storage.create_delivery(delivery)
        retry_at = utc_now() + timedelta(minutes=2)

        await storage.update_delivery(
            delivery.id, status="FAILED", error="HTTP 500: boom", next_retry_at=retry_at
        )

        loaded = await storage.get_delivery(delivery.id)
        assert loaded is not None
        assert loaded.status == "FAILED"
        assert loaded.error == "HTTP 500: boom"
        assert loaded.next_retry_at == retry_at
        assert loaded.payload == delivery.payload

    @pytest.mark.asyncio
    async def test_update_rejects_payload(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        delivery = _delivery(make_subscription())
        await storage.create_delivery(delivery)

        with pytest.raises(ValueError, match="payload"):
            await storage.update_delivery(delivery.id, payload="{}")

    @pytest.mark.asyncio
    async def test_claim_once(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        delivery = _delivery(
            make_subscription(),
            status="FAILED",
            next_retry_at=utc_now() - timedelta(minutes=1),
        )
        await storage.create_delivery(delivery)

        claimed = await storage.claim_delivery(delivery.id, expected_attempt=1)
        assert claimed is not None
        assert claimed.status == "PENDING"
        assert claimed.attempt == 2
        assert claimed.next_retry_at is None
        assert claimed.payload == delivery.payload

        assert await storage.claim_delivery(delivery.id, expected_attempt=1) is None

    @pytest.mark.asyncio
    async def test_claim_requires_failed(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        delivery = _delivery(make_subscription(), status="SUCCESS")
        await storage.create_delivery(delivery)

        assert await storage.claim_delivery(delivery.id, expected_attempt=1) is None
        loaded = await storage.get_delivery(delivery.id)
        assert loaded is not None and loaded.status == "SUCCESS"

    @pytest.mark.asyncio
    async def test_claim_stale_attempt(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        delivery = _delivery(make_subscription(), status="FAILED", attempt=2)
        await storage.create_delivery(delivery)

        assert await storage.claim_delivery(delivery.id, expected_attempt=1) is None

    @pytest.mark.asyncio
    async def test_due_deliveries(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        active = make_subscription()
        inactive = make_subscription(active=False)
        await storage.store_subscription(active)
        await storage.store_subscription(inactive)
        now = utc_now()

        later = _delivery(active, status="FAILED", next_retry_at=now - timedelta(minutes=1))
        earlier = _delivery(active, status="FAILED", next_retry_at=now - timedelta(minutes=5))
        future = _delivery(active, status="FAILED", next_retry_at=now + timedelta(minutes=5))
        terminal = _delivery(active, status="FAILED")
        succeeded = _delivery(active, status="SUCCESS")
        orphaned = _delivery(inactive, status="FAILED", next_retry_at=now - timedelta(minutes=1))
        for delivery in (later, earlier, future, terminal, succeeded, orphaned):
            await storage.create_delivery(delivery)

        due = await storage.get_due_deliveries(now=now)
        assert [d.id for d in due] == [earlier.id, later.id]

        assert [d.id for d in await storage.get_due_deliveries(now=now, limit=1)] == [earlier.id]

    @pytest.mark.asyncio
    async def test_due_deliveries_reads_one_ordered_batch(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        subscription = make_subscription()
        await storage.store_subscription(subscription)
        now = utc_now()
        for minutes in (3, 2, 1):
            await storage.create_delivery(
                _delivery(
                    subscription, status="FAILED", next_retry_at=now - timedelta(minutes=minutes)
                )
            )

        with patch.object(storage.client, "scroll", wraps=storage.client.scroll) as scroll:
            due = await storage.get_due_deliveries(now=now, limit=2)

        assert len(due) == 2
        assert due[0].next_retry_at < due[1].next_retry_at
        scroll.assert_called_once()
        kwargs = scroll.call_args.kwargs
        assert kwargs["limit"] == 2
        assert kwargs["order_by"].key == "next_retry_ts"

    @pytest.mark.asyncio
    async def test_list_filters(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        first = make_subscription()
        second = make_subscription()
        now = utc_now()
        old = _delivery(first, created_at=now - timedelta(days=2), status="SUCCESS")
        recent = _delivery(first, created_at=now - timedelta(hours=1), status="FAILED")
        other = _delivery(second, event="opportunity.lost", created_at=now, status="SUCCESS")
        for delivery in (old, recent, other):
            await storage.create_delivery(delivery)

        assert [d.id for d in await storage.list_deliveries()] == [other.id, recent.id, old.id]
        assert [d.id for d in await storage.list_deliveries(subscription_id=first.id)] == [
            recent.id,
            old.id,
        ]
        assert [d.id for d in await storage.list_deliveries(status="SUCCESS")] == [
            other.id,
            old.id,
        ]
        assert [d.id for d in await storage.list_deliveries(event="opportunity.lost")] == [
            other.id
        ]
        since = await storage.list_deliveries(since=now - timedelta(days=1))
        assert [d.id for d in since] == [other.id, recent.id]
        until = await storage.list_deliveries(until=now - timedelta(days=1))
        assert [d.id for d in until] == [old.id]
        assert [d.id for d in await storage.list_deliveries(limit=1, offset=1)] == [recent.id]

        assert await storage.count_deliveries(subscription_id=first.id, status="FAILED") == 1

    @pytest.mark.asyncio
    async def test_stats(
        self, storage: WebhookStorage, make_subscription: Callable[..., Subscription]
    ) -> None:
        subscription = make_subscription()
        for status in ("SUCCESS", "SUCCESS", "SUCCESS", "FAILED", "PENDING"):
            await storage.create_delivery(_delivery(subscription, status=status))
        await storage.create_delivery(_delivery(make_subscription(), status="FAILED"))

        stats = await storage.get_delivery_stats(subscription_id=subscription.id)

        assert stats.total == 5
        assert stats.successful == 3
        assert stats.failed == 1
        assert stats.pending == 1
        assert stats.success_rate == 60.0

        overall = await storage.get_delivery_stats()
        assert overall.total == 6
        assert overall.failed == 2
