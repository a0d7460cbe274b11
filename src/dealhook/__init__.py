"""Dealhook: signed, retried webhook delivery for CRM events.

Delivers opportunity events to registered HTTP endpoints with HMAC-SHA256
signatures, a durable delivery ledger and exponential backoff retries.

Quick Start:
    from dealhook import WebhookService

    async with WebhookService.create() as service:
        await service.create_subscription(
            name="Billing sync",
            url="https://billing.example.com/hooks/crm",
            events=["opportunity.won"],
            secret="abc123",
        )
        await service.dispatch("opportunity.won", {"opportunityId": "op_1"})

Core Types:
    - Subscription: A registered endpoint and the events it wants
    - Delivery: One event instance sent to one subscription, across retries
    - WebhookEnvelope: JSON body POSTed to endpoints
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Events
from .events import ALL_EVENTS, EVENT_DESCRIPTIONS, OpportunityEvent, OpportunityWebhooks

# Exceptions
from .exceptions import (
    ConfigurationError,
    DealhookError,
    NotFoundError,
    StorageError,
    TransportError,
    ValidationError,
)

# Models
from .models import (
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    Subscription,
    WebhookEnvelope,
)

# Service
from .service import WebhookService

# Storage
from .storage import WebhookStorage

# Delivery engine
from .webhooks import (
    DeliveryTransport,
    RetrySweeper,
    WebhookDispatcher,
    compute_signature,
    verify_signature,
)

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Events
    "ALL_EVENTS",
    "EVENT_DESCRIPTIONS",
    "OpportunityEvent",
    "OpportunityWebhooks",
    # Exceptions
    "ConfigurationError",
    "DealhookError",
    "NotFoundError",
    "StorageError",
    "TransportError",
    "ValidationError",
    # Models
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "Subscription",
    "WebhookEnvelope",
    # Service
    "WebhookService",
    # Storage
    "WebhookStorage",
    # Delivery engine
    "DeliveryTransport",
    "RetrySweeper",
    "WebhookDispatcher",
    "compute_signature",
    "verify_signature",
]
