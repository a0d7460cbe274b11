"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dealhook.models import Delivery, DeliveryStats, DeliveryStatus, Subscription


class HealthResponse(BaseModel):
    """Service health status."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(description="healthy or unhealthy")
    version: str = Field(description="Dealhook version")
    storage_connected: bool = Field(description="Whether storage is reachable")


class EventInfo(BaseModel):
    """One event subscriptions may register for."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(description="Constant name, e.g. WON")
    value: str = Field(description="Event name sent on the wire")
    description: str = Field(description="When the event fires")


class EventsResponse(BaseModel):
    """Catalogue of known events."""

    model_config = ConfigDict(extra="forbid")

    events: list[EventInfo]


class SubscriptionCreateRequest(BaseModel):
    """Request body for registering a webhook.

    Attributes:
        name: Human-readable name.
        url: Absolute http(s) endpoint URL.
        events: Event names to subscribe to.
        secret: Shared secret for signatures. Omit for unsigned deliveries.
        active: Whether the webhook receives events.
        retry_count: Maximum delivery attempts.
        timeout_seconds: Per-attempt timeout.
        custom_headers: Extra request headers.
        description: Free text.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, description="Human-readable name")
    url: str = Field(min_length=1, description="Endpoint URL")
    events: list[str] = Field(description="Subscribed event names")
    secret: str | None = Field(default=None, description="Shared secret for HMAC-SHA256")
    active: bool = Field(default=True, description="Whether the webhook receives events")
    retry_count: int | None = Field(default=None, ge=1, le=10, description="Maximum attempts")
    timeout_seconds: int | None = Field(
        default=None, ge=1, le=300, description="Per-attempt timeout"
    )
    custom_headers: dict[str, str] | None = Field(default=None, description="Extra headers")
    description: str | None = Field(default=None, description="Free-form description")


class SubscriptionUpdateRequest(BaseModel):
    """Request body for updating a webhook. Only provided fields change."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    url: str | None = Field(default=None, min_length=1)
    events: list[str] | None = None
    secret: str | None = None
    active: bool | None = None
    retry_count: int | None = Field(default=None, ge=1, le=10)
    timeout_seconds: int | None = Field(default=None, ge=1, le=300)
    custom_headers: dict[str, str] | None = None
    description: str | None = None


class DeliveryResponse(BaseModel):
    """A delivery ledger record."""

    model_config = ConfigDict(extra="forbid")

    id: str
    subscription_id: str
    event: str
    payload: str
    status: DeliveryStatus
    attempt: int
    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeliveryResponse:
        return cls(**delivery.model_dump())


class SubscriptionResponse(BaseModel):
    """A registered webhook. The secret itself is never returned."""

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str | None = None
    url: str
    events: list[str]
    has_secret: bool = Field(description="Whether deliveries are signed")
    active: bool
    retry_count: int
    timeout_seconds: int
    custom_headers: dict[str, str] | None = None
    description: str | None = None
    created_at: datetime
    updated_at: datetime
    stats: DeliveryStats | None = None

    @classmethod
    def from_subscription(
        cls,
        subscription: Subscription,
        stats: DeliveryStats | None = None,
    ) -> SubscriptionResponse:
        data: dict[str, Any] = subscription.model_dump(exclude={"secret"})
        data["url"] = str(subscription.url)
        return cls(**data, has_secret=subscription.secret is not None, stats=stats)


class SubscriptionDetailResponse(SubscriptionResponse):
    """A webhook with its most recent deliveries."""

    recent_deliveries: list[DeliveryResponse] = Field(default_factory=list)


class PageInfo(BaseModel):
    """Pagination details."""

    model_config = ConfigDict(extra="forbid")

    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> PageInfo:
        return cls(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit)


class SubscriptionListResponse(BaseModel):
    """A page of webhooks."""

    model_config = ConfigDict(extra="forbid")

    items: list[SubscriptionResponse]
    pagination: PageInfo


class DeliveryListResponse(BaseModel):
    """A page of deliveries."""

    model_config = ConfigDict(extra="forbid")

    items: list[DeliveryResponse]
    pagination: PageInfo


class EndpointTestResponse(BaseModel):
    """Result of sending webhook.test to an endpoint."""

    model_config = ConfigDict(extra="forbid")

    valid: bool


class RetryRequest(BaseModel):
    """Request body for retrying deliveries.

    Omit delivery_ids to retry every delivery whose retry time has passed.
    """

    model_config = ConfigDict(extra="forbid")

    delivery_ids: list[str] | None = Field(default=None, description="Deliveries to resend")


class RetryResponse(BaseModel):
    """Outcome of a retry request."""

    model_config = ConfigDict(extra="forbid")

    retried: int = Field(ge=0, description="Deliveries resent")
    message: str
