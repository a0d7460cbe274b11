"""Dealhook service layer.

This module provides WebhookService, the process-level owner of storage,
the dispatcher and the retry sweeper. Registration input is validated here
before it reaches storage.

Example:
    ```python
    from dealhook.service import WebhookService

    async with WebhookService.create() as service:
        subscription = await service.create_subscription(
            name="Billing sync",
            url="https://billing.example.com/hooks/crm",
            events=["opportunity.won"],
            secret="abc123",
        )
        await service.dispatch("opportunity.won", {"opportunityId": "op_1"})
    ```
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NoReturn

import pydantic

from dealhook.config import Settings
from dealhook.events import ALL_EVENTS
from dealhook.exceptions import NotFoundError, ValidationError
from dealhook.models import (
    ALL_DELIVERY_STATUSES,
    Delivery,
    DeliveryStats,
    Subscription,
)
from dealhook.storage import WebhookStorage
from dealhook.webhooks import (
    RESERVED_HEADERS,
    DeliveryTransport,
    RetrySweeper,
    WebhookDispatcher,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Fields update_subscription accepts
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "url",
        "events",
        "secret",
        "active",
        "retry_count",
        "timeout_seconds",
        "custom_headers",
        "description",
    }
)


def _raise_from_pydantic(error: pydantic.ValidationError) -> NoReturn:
    first = error.errors()[0]
    field_name = ".".join(str(part) for part in first.get("loc", ())) or "subscription"
    raise ValidationError(field_name, first.get("msg", "invalid value")) from error


def validate_events(events: list[str] | None) -> list[str]:
    """Check that events is non-empty and only names known events."""
    if not events:
        raise ValidationError("events", "at least one event is required")
    unknown = [e for e in events if e not in ALL_EVENTS]
    if unknown:
        raise ValidationError("events", f"unknown events: {', '.join(unknown)}")
    return events


def validate_custom_headers(headers: dict[str, str] | None) -> dict[str, str] | None:
    """Reject custom headers that would replace a reserved header."""
    if not headers:
        return headers
    reserved = [name for name in headers if name.lower() in RESERVED_HEADERS]
    if reserved:
        raise ValidationError(
            "custom_headers", f"reserved headers cannot be overridden: {', '.join(reserved)}"
        )
    return headers


def _page_window(page: int, limit: int) -> tuple[int, int]:
    if page < 1:
        raise ValidationError("page", "must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit, limit


@dataclass
class WebhookService:
    """High-level webhook service.

    This service provides a simple interface for:
    - dispatch(): Deliver an event to every subscribed endpoint
    - create/update/delete/list subscriptions with validation
    - list_deliveries() / get_delivery_stats(): Inspect the ledger
    - retry_deliveries(): Run a sweep or resend specific deliveries

    Uses dependency injection for storage and the dispatcher, making it
    easy to test and configure.

    Attributes:
        storage: Storage backend (Qdrant).
        dispatcher: Fan-out and retry engine.
        settings: Configuration settings.
    """

    storage: WebhookStorage
    dispatcher: WebhookDispatcher
    settings: Settings

    _sweeper: RetrySweeper | None = field(default=None, init=False, repr=False)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        transport: DeliveryTransport | None = None,
    ) -> WebhookService:
        """Create a WebhookService with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.
            transport: Optional delivery transport (tests pass a mocked one).

        Returns:
            Configured WebhookService instance.
        """
        if settings is None:
            settings = Settings()

        storage = WebhookStorage(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            prefix=settings.collection_prefix,
        )
        dispatcher = WebhookDispatcher(
            storage,
            transport or DeliveryTransport(response_body_limit=settings.response_body_limit),
            user_agent=settings.user_agent,
            max_concurrent=settings.max_concurrent_deliveries,
            retry_batch_size=settings.retry_batch_size,
            response_body_limit=settings.response_body_limit,
            validation_timeout_seconds=settings.validation_timeout_seconds,
        )
        return cls(storage=storage, dispatcher=dispatcher, settings=settings)

    async def initialize(self) -> None:
        """Initialize the service (storage collections, etc.)."""
        await self.storage.initialize()

    async def close(self) -> None:
        """Stop the sweeper, wait for background dispatches and close storage."""
        self.stop_retry_sweeper()
        await self.dispatcher.drain()
        await self.storage.close()

    async def __aenter__(self) -> WebhookService:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    # Dispatch

    async def dispatch(self, event: str, data: dict[str, Any]) -> list[str]:
        """Deliver an event to every active subscription. Never raises."""
        return await self.dispatcher.dispatch(event, data)

    def dispatch_nowait(self, event: str, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        """Schedule an event for delivery without awaiting it."""
        return self.dispatcher.dispatch_nowait(event, data)

    # Subscriptions

    async def _check_endpoint(self, url: str, secret: str | None) -> None:
        if not self.settings.is_endpoint_validation_enabled:
            return
        if not await self.dispatcher.validate_endpoint(url, secret):
            raise ValidationError("url", "endpoint did not accept the webhook.test event")

    async def create_subscription(
        self,
        name: str,
        url: str,
        events: list[str],
        secret: str | None = None,
        active: bool = True,
        retry_count: int | None = None,
        timeout_seconds: int | None = None,
        custom_headers: dict[str, str] | None = None,
        description: str | None = None,
    ) -> Subscription:
        """Register a new subscription.

        Args:
            name: Human-readable name.
            url: Absolute http(s) endpoint URL.
            events: Known event names to subscribe to.
            secret: Shared secret for signing. None sends unsigned deliveries.
            active: Whether the subscription receives events.
            retry_count: Maximum attempts. Defaults to settings.default_retry_count.
            timeout_seconds: Per-attempt timeout. Defaults to settings.default_timeout_seconds.
            custom_headers: Extra request headers.
            description: Optional free text.

        Returns:
            The stored Subscription.

        Raises:
            ValidationError: If any input is invalid or the endpoint check fails.
        """
        if not name or not name.strip():
            raise ValidationError("name", "is required")
        validate_events(events)
        validate_custom_headers(custom_headers)

        try:
            subscription = Subscription(
                name=name.strip(),
                url=url,
                events=events,
                secret=secret or None,
                active=active,
                retry_count=(
                    self.settings.default_retry_count if retry_count is None else retry_count
                ),
                timeout_seconds=(
                    self.settings.default_timeout_seconds
                    if timeout_seconds is None
                    else timeout_seconds
                ),
                custom_headers=custom_headers,
                description=description,
            )
        except pydantic.ValidationError as e:
            _raise_from_pydantic(e)

        await self._check_endpoint(str(subscription.url), subscription.secret)
        await self.storage.store_subscription(subscription)
        logger.info("Created subscription %s for %s", subscription.id, subscription.events)
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        """Get a subscription by ID.

        Raises:
            NotFoundError: If no such subscription exists.
        """
        subscription = await self.storage.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def list_subscriptions(
        self,
        active: bool | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Subscription], int]:
        """List subscriptions, newest first.

        Returns:
            The requested page and the total number of matches.
        """
        offset, limit = _page_window(page, limit)
        subscriptions = await self.storage.list_subscriptions(
            active=active, limit=limit, offset=offset
        )
        total = await self.storage.count_subscriptions(active=active)
        return subscriptions, total

    async def update_subscription(self, subscription_id: str, **updates: Any) -> Subscription:
        """Update fields of a subscription.

        Only provided fields change. A changed URL is re-validated against
        the endpoint when endpoint validation is enabled.

        Raises:
            NotFoundError: If no such subscription exists.
            ValidationError: If any update is invalid.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "cannot be updated")

        current = await self.get_subscription(subscription_id)

        if "name" in updates and (not updates["name"] or not str(updates["name"]).strip()):
            raise ValidationError("name", "cannot be empty")
        if "events" in updates:
            validate_events(updates["events"])
        if "custom_headers" in updates:
            validate_custom_headers(updates["custom_headers"])

        if "url" in updates and str(updates["url"]) != str(current.url):
            secret = updates.get("secret", current.secret)
            try:
                new_url = str(pydantic.TypeAdapter(pydantic.HttpUrl).validate_python(updates["url"]))
            except pydantic.ValidationError as e:
                _raise_from_pydantic(e)
            await self._check_endpoint(new_url, secret)

        try:
            updated = await self.storage.update_subscription(subscription_id, **updates)
        except pydantic.ValidationError as e:
            _raise_from_pydantic(e)

        if updated is None:
            raise NotFoundError("subscription", subscription_id)
        logger.info("Updated subscription %s (%s)", subscription_id, ", ".join(sorted(updates)))
        return updated

    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription and its delivery history.

        Raises:
            NotFoundError: If no such subscription exists.
        """
        if not await self.storage.delete_subscription(subscription_id):
            raise NotFoundError("subscription", subscription_id)

    async def test_subscription(self, subscription_id: str) -> bool:
        """Send a webhook.test event to a stored subscription.

        Raises:
            NotFoundError: If no such subscription exists.
            ValidationError: If the subscription is inactive.
        """
        subscription = await self.get_subscription(subscription_id)
        if not subscription.active:
            raise ValidationError("active", "subscription is inactive")
        return await self.dispatcher.validate_endpoint(
            str(subscription.url), subscription.secret
        )

    # Deliveries

    async def list_deliveries(
        self,
        subscription_id: str | None = None,
        status: str | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Delivery], int]:
        """List ledger records matching the filters, newest first.

        Returns:
            The requested page and the total number of matches.
        """
        if status is not None and status not in ALL_DELIVERY_STATUSES:
            raise ValidationError("status", f"must be one of {', '.join(ALL_DELIVERY_STATUSES)}")
        offset, limit = _page_window(page, limit)

        deliveries = await self.storage.list_deliveries(
            subscription_id=subscription_id,
            status=status,
            event=event,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
        total = await self.storage.count_deliveries(
            subscription_id=subscription_id,
            status=status,
            event=event,
            since=since,
            until=until,
        )
        return deliveries, total

    async def get_delivery_stats(
        self,
        subscription_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> DeliveryStats:
        """Aggregate delivery counts, optionally for one subscription."""
        return await self.storage.get_delivery_stats(
            subscription_id=subscription_id, since=since, until=until
        )

    async def retry_deliveries(self, delivery_ids: list[str] | None = None) -> int:
        """Retry failed deliveries now.

        Args:
            delivery_ids: Specific deliveries to resend. None runs a regular
                sweep over every due delivery.

        Returns:
            Number of deliveries resent.
        """
        if delivery_ids is None:
            result = await self.dispatcher.retry_due()
            return result.retried
        return await self.dispatcher.redeliver(delivery_ids)

    # Background sweep

    def start_retry_sweeper(self) -> RetrySweeper:
        """Start the periodic retry sweep. Requires a running event loop."""
        if self._sweeper is None:
            self._sweeper = RetrySweeper(
                self.dispatcher, interval_seconds=self.settings.retry_sweep_interval_seconds
            )
        self._sweeper.start()
        return self._sweeper

    def stop_retry_sweeper(self) -> None:
        """Stop the periodic retry sweep if it is running."""
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None


__all__ = ["UPDATABLE_FIELDS", "WebhookService", "validate_custom_headers", "validate_events"]
