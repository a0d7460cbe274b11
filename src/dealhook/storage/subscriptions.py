"""Subscription registry operations for Dealhook storage."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from qdrant_client import models

from dealhook.models import Subscription, utc_now
from dealhook.storage.retry import qdrant_retry

from .base import PLACEHOLDER_VECTOR

if TYPE_CHECKING:
    from qdrant_client import AsyncQdrantClient

logger = logging.getLogger(__name__)


class SubscriptionMixin:
    """Mixin providing subscription CRUD for WebhookStorage.

    This mixin expects the following attributes/methods from the base class:
    - _collection_name(kind) -> str
    - _point_id(record_id) -> str
    - _record_to_payload(record) -> dict
    - _payload_to_record(payload, record_class) -> record
    - _scroll_all(collection_name, scroll_filter, max_records) -> list
    - delete_deliveries_for_subscription(subscription_id) -> int
    - client: AsyncQdrantClient
    """

    _collection_name: Any
    _point_id: Any
    _record_to_payload: Any
    _payload_to_record: Any
    _scroll_all: Any
    delete_deliveries_for_subscription: Any
    _max_scroll: int
    client: AsyncQdrantClient

    @qdrant_retry
    async def store_subscription(self, subscription: Subscription) -> str:
        """Store (insert or replace) a subscription.

        Args:
            subscription: Subscription to store.

        Returns:
            The subscription ID.
        """
        await self.client.upsert(
            collection_name=self._collection_name("webhooks"),
            points=[
                models.PointStruct(
                    id=self._point_id(subscription.id),
                    vector=PLACEHOLDER_VECTOR,
                    payload=self._record_to_payload(subscription),
                )
            ],
            wait=True,
        )
        return subscription.id

    @qdrant_retry
    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Get a subscription by ID.

        Returns:
            Subscription or None if not found.
        """
        results = await self.client.retrieve(
            collection_name=self._collection_name("webhooks"),
            ids=[self._point_id(subscription_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None

        subscription: Subscription = self._payload_to_record(results[0].payload, Subscription)
        return subscription

    def _subscription_filter(self, active: bool | None) -> models.Filter | None:
        if active is None:
            return None
        return models.Filter(
            must=[models.FieldCondition(key="active", match=models.MatchValue(value=active))]
        )

    @qdrant_retry
    async def list_subscriptions(
        self,
        active: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Subscription]:
        """List subscriptions, newest first.

        Args:
            active: If set, only return subscriptions with this active flag.
            limit: Maximum subscriptions to return.
            offset: Number of subscriptions to skip.

        Returns:
            List of Subscription sorted by created_at descending.
        """
        records = await self._scroll_all(
            self._collection_name("webhooks"),
            self._subscription_filter(active),
        )
        subscriptions: list[Subscription] = [
            self._payload_to_record(r.payload, Subscription) for r in records if r.payload
        ]
        subscriptions.sort(key=lambda s: s.created_at, reverse=True)
        return subscriptions[offset : offset + limit]

    @qdrant_retry
    async def count_subscriptions(self, active: bool | None = None) -> int:
        """Count subscriptions, optionally filtered by active flag."""
        result = await self.client.count(
            collection_name=self._collection_name("webhooks"),
            count_filter=self._subscription_filter(active),
            exact=True,
        )
        return result.count

    @qdrant_retry
    async def get_subscriptions_for_event(self, event: str) -> list[Subscription]:
        """Get all active subscriptions that want an event.

        Args:
            event: Event name, matched exactly against each subscription's events.

        Returns:
            List of matching Subscription.
        """
        records = await self._scroll_all(
            self._collection_name("webhooks"),
            models.Filter(
                must=[
                    models.FieldCondition(key="active", match=models.MatchValue(value=True)),
                    models.FieldCondition(key="events", match=models.MatchValue(value=event)),
                ]
            ),
        )
        subscriptions: list[Subscription] = [
            self._payload_to_record(r.payload, Subscription) for r in records if r.payload
        ]
        return [s for s in subscriptions if s.subscribes_to(event)]

    async def get_active_subscription_ids(self) -> list[str]:
        """IDs of every active subscription."""
        return [s.id for s in await self.list_subscriptions(active=True, limit=self._max_scroll)]

    async def update_subscription(
        self,
        subscription_id: str,
        **updates: Any,
    ) -> Subscription | None:
        """Update fields of a subscription.

        Updates are re-validated against the Subscription model; unknown
        fields raise pydantic.ValidationError.

        Args:
            subscription_id: ID of the subscription to update.
            **updates: Fields to update.

        Returns:
            Updated Subscription or None if not found.
        """
        subscription = await self.get_subscription(subscription_id)
        if subscription is None:
            return None

        data = subscription.model_dump()
        data.update(updates)
        data["id"] = subscription.id
        data["created_at"] = subscription.created_at
        data["updated_at"] = utc_now()
        updated = Subscription.model_validate(data)

        await self.store_subscription(updated)
        return updated

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Delete a subscription and its delivery history.

        Args:
            subscription_id: ID of the subscription to delete.

        Returns:
            True if deleted, False if not found.
        """
        if await self.get_subscription(subscription_id) is None:
            return False

        removed = await self.delete_deliveries_for_subscription(subscription_id)
        await self.client.delete(
            collection_name=self._collection_name("webhooks"),
            points_selector=models.PointIdsList(points=[self._point_id(subscription_id)]),
            wait=True,
        )
        logger.info(
            "Deleted subscription %s and %d deliveries", subscription_id, removed
        )
        return True
