"""Qdrant storage client for the Dealhook webhook engine.

This module provides the main WebhookStorage class that combines the
subscription registry and the delivery ledger through mixins.

Example:
    ```python
    from dealhook.storage import WebhookStorage

    async with WebhookStorage(url=":memory:") as storage:
        await storage.store_subscription(subscription)
        due = await storage.get_due_deliveries(limit=50)
    ```
"""

from __future__ import annotations

from typing import Any

from .base import StorageBase
from .deliveries import DeliveryMixin
from .subscriptions import SubscriptionMixin


class WebhookStorage(SubscriptionMixin, DeliveryMixin, StorageBase):
    """Async Qdrant storage for subscriptions and deliveries.

    This class combines functionality from multiple mixins:
    - SubscriptionMixin: store_subscription, get_subscription, list_subscriptions,
      update_subscription, delete_subscription, get_subscriptions_for_event
    - DeliveryMixin: create_delivery, get_delivery, update_delivery,
      claim_delivery, get_due_deliveries, list_deliveries, get_delivery_stats

    Attributes:
        client: Async Qdrant client instance.
    """

    async def __aenter__(self) -> WebhookStorage:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
