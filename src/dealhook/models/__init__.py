"""Data models for Dealhook.

Core Types:
    - Subscription: A registered endpoint and the events it wants
    - Delivery: Ledger record tracking one event instance to one subscription
    - WebhookEnvelope: JSON body sent to endpoints

Supporting Types:
    - DeliveryStatus: PENDING, SUCCESS or FAILED
    - DeliveryStats: Aggregate counts for operators
"""

from .base import generate_id, utc_now
from .webhook import (
    ALL_DELIVERY_STATUSES,
    DEFAULT_RESPONSE_BODY_LIMIT,
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    EnvelopeMetadata,
    Subscription,
    WebhookEnvelope,
    truncate_body,
)

__all__ = [
    "generate_id",
    "utc_now",
    "ALL_DELIVERY_STATUSES",
    "DEFAULT_RESPONSE_BODY_LIMIT",
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "EnvelopeMetadata",
    "Subscription",
    "WebhookEnvelope",
    "truncate_body",
]
