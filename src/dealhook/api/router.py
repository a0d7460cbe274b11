"""FastAPI router for Dealhook API endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dealhook import __version__
from dealhook.events import OpportunityEvent, describe_event
from dealhook.service import WebhookService

from .schemas import (
    DeliveryListResponse,
    DeliveryResponse,
    EndpointTestResponse,
    EventInfo,
    EventsResponse,
    HealthResponse,
    PageInfo,
    RetryRequest,
    RetryResponse,
    SubscriptionCreateRequest,
    SubscriptionDetailResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

RECENT_DELIVERIES = 10

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency to get the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is not None:
        return HealthResponse(status="healthy", version=__version__, storage_connected=True)
    return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)


@router.get("/webhooks/events", response_model=EventsResponse, tags=["webhooks"])
async def list_events() -> EventsResponse:
    """List the events a webhook can subscribe to."""
    return EventsResponse(
        events=[
            EventInfo(key=event.name, value=event.value, description=describe_event(event.value))
            for event in OpportunityEvent
        ]
    )


@router.get("/webhooks/deliveries", response_model=DeliveryListResponse, tags=["deliveries"])
async def list_deliveries(
    service: ServiceDep,
    webhook_id: str | None = None,
    delivery_status: Annotated[str | None, Query(alias="status")] = None,
    event: str | None = None,
    since: Annotated[datetime | None, Query(alias="from")] = None,
    until: Annotated[datetime | None, Query(alias="to")] = None,
    page: int = 1,
    limit: int = 20,
) -> DeliveryListResponse:
    """List delivery records, newest first.

    Filter by webhook, status (PENDING, SUCCESS, FAILED), event and a
    creation time range.
    """
    deliveries, total = await service.list_deliveries(
        subscription_id=webhook_id,
        status=delivery_status,
        event=event,
        since=since,
        until=until,
        page=page,
        limit=limit,
    )
    return DeliveryListResponse(
        items=[DeliveryResponse.from_delivery(d) for d in deliveries],
        pagination=PageInfo.build(page, limit, total),
    )


@router.post("/webhooks/deliveries/retry", response_model=RetryResponse, tags=["deliveries"])
async def retry_deliveries(
    request: RetryRequest,
    service: ServiceDep,
) -> RetryResponse:
    """Retry failed deliveries.

    Without delivery_ids every delivery whose retry time has passed is
    resent. With delivery_ids each eligible delivery is resent now.
    """
    retried = await service.retry_deliveries(request.delivery_ids)
    if request.delivery_ids is None:
        message = f"Retried {retried} due deliveries"
    else:
        message = f"Retried {retried} of {len(request.delivery_ids)} deliveries"
    return RetryResponse(retried=retried, message=message)


@router.get("/webhooks", response_model=SubscriptionListResponse, tags=["webhooks"])
async def list_webhooks(
    service: ServiceDep,
    active: bool | None = None,
    page: int = 1,
    limit: int = 10,
) -> SubscriptionListResponse:
    """List registered webhooks with delivery statistics."""
    subscriptions, total = await service.list_subscriptions(active=active, page=page, limit=limit)
    items = [
        SubscriptionResponse.from_subscription(s, await service.get_delivery_stats(s.id))
        for s in subscriptions
    ]
    return SubscriptionListResponse(items=items, pagination=PageInfo.build(page, limit, total))


@router.post(
    "/webhooks",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_webhook(
    request: SubscriptionCreateRequest,
    service: ServiceDep,
) -> SubscriptionResponse:
    """Register a webhook.

    In production the endpoint must answer a webhook.test event with a
    2xx status before it is saved.
    """
    subscription = await service.create_subscription(**request.model_dump())
    return SubscriptionResponse.from_subscription(subscription)


@router.get(
    "/webhooks/{webhook_id}",
    response_model=SubscriptionDetailResponse,
    tags=["webhooks"],
)
async def get_webhook(webhook_id: str, service: ServiceDep) -> SubscriptionDetailResponse:
    """Get a webhook with its statistics and most recent deliveries."""
    subscription = await service.get_subscription(webhook_id)
    stats = await service.get_delivery_stats(subscription.id)
    recent, _ = await service.list_deliveries(subscription_id=subscription.id, limit=RECENT_DELIVERIES)
    base = SubscriptionResponse.from_subscription(subscription, stats)
    return SubscriptionDetailResponse(
        **base.model_dump(),
        recent_deliveries=[DeliveryResponse.from_delivery(d) for d in recent],
    )


@router.put("/webhooks/{webhook_id}", response_model=SubscriptionResponse, tags=["webhooks"])
async def update_webhook(
    webhook_id: str,
    request: SubscriptionUpdateRequest,
    service: ServiceDep,
) -> SubscriptionResponse:
    """Update a webhook. Only fields present in the body change."""
    subscription = await service.update_subscription(
        webhook_id, **request.model_dump(exclude_unset=True)
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.delete(
    "/webhooks/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["webhooks"],
)
async def delete_webhook(webhook_id: str, service: ServiceDep) -> None:
    """Delete a webhook and its delivery history."""
    await service.delete_subscription(webhook_id)
    logger.info("Deleted webhook %s via API", webhook_id)


@router.post(
    "/webhooks/{webhook_id}/test",
    response_model=EndpointTestResponse,
    tags=["webhooks"],
)
async def test_webhook(webhook_id: str, service: ServiceDep) -> EndpointTestResponse:
    """Send a webhook.test event to an active webhook."""
    return EndpointTestResponse(valid=await service.test_subscription(webhook_id))
