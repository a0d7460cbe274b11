"""Webhook delivery for CRM events.

Provides signed, at-least-once HTTP delivery of events to registered
endpoints with exponential backoff retries.

Example:
    ```python
    from dealhook.webhooks import WebhookDispatcher

    dispatcher = WebhookDispatcher(storage)
    await dispatcher.dispatch("opportunity.won", {"opportunityId": "op_1"})
    ```
"""

from .backoff import backoff_delay, next_retry_at
from .dispatcher import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    RESERVED_HEADERS,
    SIGNATURE_HEADER,
    TEST_EVENT,
    RetrySweepResult,
    WebhookDispatcher,
    build_headers,
)
from .scheduler import RetrySweeper
from .signing import SIGNATURE_PREFIX, compute_signature, verify_signature
from .transport import DeliveryTransport, TransportResult

__all__ = [
    "DELIVERY_HEADER",
    "EVENT_HEADER",
    "RESERVED_HEADERS",
    "SIGNATURE_HEADER",
    "SIGNATURE_PREFIX",
    "TEST_EVENT",
    "DeliveryTransport",
    "RetrySweepResult",
    "RetrySweeper",
    "TransportResult",
    "WebhookDispatcher",
    "backoff_delay",
    "build_headers",
    "compute_signature",
    "next_retry_at",
    "verify_signature",
]
