"""Webhook models for outbound CRM event notifications.

Provides subscription registration, the JSON envelope sent to endpoints,
and the delivery ledger record that tracks each event instance.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from .base import generate_id, utc_now

# Delivery lifecycle: PENDING -> SUCCESS | FAILED (retry scheduled or terminal)
DeliveryStatus = Literal["PENDING", "SUCCESS", "FAILED"]

ALL_DELIVERY_STATUSES: list[DeliveryStatus] = ["PENDING", "SUCCESS", "FAILED"]

DEFAULT_RESPONSE_BODY_LIMIT = 1000


def truncate_body(text: str | None, limit: int = DEFAULT_RESPONSE_BODY_LIMIT) -> str | None:
    """Cap a response body to ``limit`` characters (None stays None)."""
    if text is None:
        return None
    return text[:limit]


class Subscription(BaseModel):
    """A registered webhook endpoint.

    Attributes:
        id: Unique identifier for this subscription.
        name: Human-readable name shown to operators.
        url: Absolute endpoint URL receiving POSTed events.
        events: Event names this subscription wants.
        secret: Shared secret for signing. None means unsigned deliveries.
        active: Inactive subscriptions are never dispatched to or retried.
        retry_count: Maximum delivery attempts (initial attempt + retries).
        timeout_seconds: Per-attempt HTTP timeout.
        custom_headers: Extra headers merged into every request.
        description: Optional free text.
        created_at: When the subscription was registered.
        updated_at: When the subscription was last modified.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    name: str | None = Field(default=None, description="Human-readable name")
    url: HttpUrl = Field(description="Endpoint receiving webhook events")
    events: list[str] = Field(default_factory=list, description="Subscribed event names")
    secret: str | None = Field(default=None, description="Shared secret for HMAC-SHA256")
    active: bool = Field(default=True, description="Whether the subscription receives events")
    retry_count: int = Field(default=3, ge=1, le=10, description="Maximum delivery attempts")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Per-attempt timeout")
    custom_headers: dict[str, str] | None = Field(
        default=None,
        description="Extra request headers (cannot replace reserved headers)",
    )
    description: str | None = Field(default=None, description="Free-form description")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("events")
    @classmethod
    def _dedupe_events(cls, events: list[str]) -> list[str]:
        """Events are a set; keep first-seen order for stable output."""
        return list(dict.fromkeys(events))

    def subscribes_to(self, event: str) -> bool:
        """Check if this subscription should receive the given event."""
        return self.active and event in self.events


class EnvelopeMetadata(BaseModel):
    """Delivery metadata embedded in every envelope."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    webhook_id: str = Field(alias="webhookId")
    delivery_id: str = Field(alias="deliveryId")


class WebhookEnvelope(BaseModel):
    """JSON body POSTed to a subscription endpoint.

    Serialized once when the delivery is created; retries resend the
    stored text so earlier signatures stay valid.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: EnvelopeMetadata

    @classmethod
    def build(
        cls,
        event: str,
        data: dict[str, Any],
        webhook_id: str,
        delivery_id: str,
    ) -> "WebhookEnvelope":
        """Create an envelope for one subscription and delivery."""
        return cls(
            event=event,
            data=data,
            metadata=EnvelopeMetadata(webhook_id=webhook_id, delivery_id=delivery_id),
        )

    def to_json(self) -> str:
        """Serialize with wire field names (webhookId, deliveryId)."""
        return self.model_dump_json(by_alias=True)


class Delivery(BaseModel):
    """Ledger record for sending one event instance to one subscription.

    A single record lives through every retry; ``attempt`` counts sends.

    Attributes:
        id: Unique identifier, also embedded in the payload as deliveryId.
        subscription_id: Owning subscription.
        event: Event name carried by this delivery.
        payload: Serialized envelope, exactly the bytes sent. Immutable.
        status: PENDING, SUCCESS or FAILED.
        attempt: Number of sends made so far (1 after the initial send).
        response_code: HTTP status of the last attempt, if any.
        response_body: Truncated response text of the last attempt.
        error: Last transport or HTTP error message.
        delivered_at: Set on the transition to SUCCESS.
        next_retry_at: When the next retry is due. None when none is scheduled.
        created_at: When the record was created.
        updated_at: When the record last changed.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    subscription_id: str = Field(description="Owning subscription ID")
    event: str = Field(description="Event name")
    payload: str = Field(frozen=True, description="Serialized envelope")
    status: DeliveryStatus = Field(default="PENDING", description="Delivery status")
    attempt: int = Field(default=1, ge=1, description="Attempts made so far")
    response_code: int | None = Field(default=None, description="Last HTTP status code")
    response_body: str | None = Field(default=None, description="Last response body (truncated)")
    error: str | None = Field(default=None, description="Last error message")
    delivered_at: datetime | None = Field(default=None, description="When delivery succeeded")
    next_retry_at: datetime | None = Field(default=None, description="When the next retry is due")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def mark_success(
        self,
        response_code: int,
        response_body: str | None = None,
        limit: int = DEFAULT_RESPONSE_BODY_LIMIT,
    ) -> "Delivery":
        """Mark delivery as successful."""
        now = utc_now()
        self.status = "SUCCESS"
        self.response_code = response_code
        self.response_body = truncate_body(response_body, limit)
        self.error = None
        if self.delivered_at is None:
            self.delivered_at = now
        self.next_retry_at = None
        self.updated_at = now
        return self

    def mark_failed(
        self,
        error: str,
        next_retry_at: datetime | None,
        response_code: int | None = None,
        response_body: str | None = None,
        limit: int = DEFAULT_RESPONSE_BODY_LIMIT,
    ) -> "Delivery":
        """Mark delivery as failed, with or without a scheduled retry."""
        self.status = "FAILED"
        self.error = error
        self.response_code = response_code
        self.response_body = truncate_body(response_body, limit)
        self.next_retry_at = next_retry_at
        self.updated_at = utc_now()
        return self

    def mark_exhausted(self) -> "Delivery":
        """Finalize as permanently failed without another attempt."""
        self.status = "FAILED"
        self.next_retry_at = None
        self.updated_at = utc_now()
        return self


class DeliveryStats(BaseModel):
    """Aggregate delivery counts for a subscription or time range."""

    model_config = ConfigDict(extra="forbid")

    total: int = Field(default=0, ge=0)
    successful: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0, description="Percent successful")

    @classmethod
    def from_counts(cls, total: int, successful: int, failed: int, pending: int) -> "DeliveryStats":
        """Build stats, computing the success rate as a percentage."""
        return cls(
            total=total,
            successful=successful,
            failed=failed,
            pending=pending,
            success_rate=(successful / total) * 100 if total > 0 else 0.0,
        )


__all__ = [
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
