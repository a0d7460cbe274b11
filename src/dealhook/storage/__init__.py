"""Storage backends for Dealhook.

This module provides the storage layer for persisting webhook
subscriptions and the delivery ledger to Qdrant.

Example:
    ```python
    from dealhook.storage import WebhookStorage

    async with WebhookStorage() as storage:
        subscriptions = await storage.get_subscriptions_for_event("opportunity.won")
    ```
"""

from .base import COLLECTION_NAMES
from .client import WebhookStorage
from .deliveries import MUTABLE_DELIVERY_FIELDS
from .retry import qdrant_retry

__all__ = [
    "WebhookStorage",
    "COLLECTION_NAMES",
    "MUTABLE_DELIVERY_FIELDS",
    "qdrant_retry",
]
