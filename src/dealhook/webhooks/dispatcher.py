"""Event fan-out, retry sweep and endpoint validation.

Implements at-least-once delivery of CRM events to registered endpoints:
- One Delivery record per event instance and subscription
- HMAC-SHA256 signatures over the exact stored payload
- Exponential backoff retries resending byte-identical bodies
- Compare-and-set claims so overlapping sweeps never double-send
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from dealhook.exceptions import TransportError
from dealhook.models import (
    DEFAULT_RESPONSE_BODY_LIMIT,
    Delivery,
    Subscription,
    WebhookEnvelope,
    generate_id,
)

from .backoff import next_retry_at
from .signing import compute_signature
from .transport import DeliveryTransport

if TYPE_CHECKING:
    from dealhook.storage import WebhookStorage

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Dealhook-Webhook/1.0"

SIGNATURE_HEADER = "X-Webhook-Signature-256"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"

# Lowercased names custom headers may never replace
RESERVED_HEADERS = frozenset(
    {"content-type", EVENT_HEADER.lower(), DELIVERY_HEADER.lower(), SIGNATURE_HEADER.lower()}
)

TEST_EVENT = "webhook.test"
TEST_DELIVERY_ID = "test"


class RetrySweepResult(BaseModel):
    """Counts from one pass over due deliveries."""

    model_config = ConfigDict(extra="forbid")

    scanned: int = Field(default=0, ge=0, description="Due deliveries selected")
    retried: int = Field(default=0, ge=0, description="Deliveries claimed and resent")
    finalized: int = Field(default=0, ge=0, description="Deliveries closed as exhausted")
    skipped: int = Field(default=0, ge=0, description="Deliveries left untouched")


def build_headers(
    event: str,
    delivery_id: str,
    payload: str,
    secret: str | None = None,
    custom_headers: dict[str, str] | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, str]:
    """Build request headers for one delivery attempt.

    Custom headers are merged case-insensitively but can never replace
    Content-Type, the event, delivery or signature headers.

    Args:
        event: Event name for X-Webhook-Event.
        delivery_id: Delivery ID for X-Webhook-Delivery.
        payload: Exact body, signed when a secret is present.
        secret: Subscription secret. None means no signature header.
        custom_headers: Subscription's extra headers.
        user_agent: User-Agent value.

    Returns:
        Header mapping ready for the transport.
    """
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        EVENT_HEADER: event,
        DELIVERY_HEADER: delivery_id,
    }
    if secret:
        headers[SIGNATURE_HEADER] = compute_signature(payload, secret)

    for name, value in (custom_headers or {}).items():
        lowered = name.lower()
        if lowered in RESERVED_HEADERS:
            logger.warning("Ignoring custom header %s: reserved", name)
            continue
        for existing in [key for key in headers if key.lower() == lowered]:
            del headers[existing]
        headers[name] = value

    return headers


class WebhookDispatcher:
    """Dispatches CRM events to subscribed endpoints.

    Handles:
    - Finding active subscriptions for an event
    - Recording each delivery before the first send
    - Classifying outcomes and scheduling retries
    - Sweeping due retries under a compare-and-set claim

    ``dispatch`` never raises: every per-subscription failure is logged and
    recorded in the ledger.

    Example:
        ```python
        dispatcher = WebhookDispatcher(storage)

        # Fan out an event to every subscribed endpoint
        await dispatcher.dispatch("opportunity.won", {"opportunityId": "op_1"})

        # Resend deliveries whose retry time has passed
        await dispatcher.retry_due()
        ```
    """

    def __init__(
        self,
        storage: WebhookStorage,
        transport: DeliveryTransport | None = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        max_concurrent: int = 10,
        retry_batch_size: int = 50,
        response_body_limit: int = DEFAULT_RESPONSE_BODY_LIMIT,
        validation_timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the webhook dispatcher.

        Args:
            storage: WebhookStorage for subscriptions and the delivery ledger.
            transport: Transport performing the HTTP attempt.
            user_agent: User-Agent sent with every attempt.
            max_concurrent: Maximum attempts in flight at once.
            retry_batch_size: Maximum deliveries handled per sweep.
            response_body_limit: Characters of response body to keep.
            validation_timeout_seconds: Timeout for endpoint validation.
        """
        self._storage = storage
        self._transport = transport or DeliveryTransport(response_body_limit=response_body_limit)
        self._user_agent = user_agent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._retry_batch_size = retry_batch_size
        self._response_body_limit = response_body_limit
        self._validation_timeout = validation_timeout_seconds
        self._background_tasks: set[asyncio.Task[list[str]]] = set()

    async def dispatch(self, event: str, data: dict[str, Any]) -> list[str]:
        """Deliver an event to every active subscription that wants it.

        Subscriptions are processed concurrently; a failure for one never
        affects the others.

        Args:
            event: Event name.
            data: Event-specific payload.

        Returns:
            IDs of the deliveries created.
        """
        try:
            subscriptions = await self._storage.get_subscriptions_for_event(event)
        except Exception:
            logger.exception("Could not resolve subscriptions for %s", event)
            return []

        if not subscriptions:
            logger.debug("No subscriptions for event %s", event)
            return []

        results = await asyncio.gather(
            *(self._deliver_to_subscription(s, event, data) for s in subscriptions),
            return_exceptions=True,
        )

        delivery_ids: list[str] = []
        for subscription, result in zip(subscriptions, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Delivery of %s to subscription %s failed: %s",
                    event,
                    subscription.id,
                    result,
                    exc_info=result,
                )
            else:
                delivery_ids.append(result)

        return delivery_ids

    def dispatch_nowait(self, event: str, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        """Schedule ``dispatch`` without awaiting it.

        Must be called from a running event loop. The task is tracked until
        it finishes so it is not garbage collected mid-flight.
        """
        task = asyncio.create_task(self.dispatch(event, data))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatch scheduled with ``dispatch_nowait``."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def _deliver_to_subscription(
        self,
        subscription: Subscription,
        event: str,
        data: dict[str, Any],
    ) -> str:
        """Create the delivery record and make the first attempt.

        Returns:
            Delivery ID.
        """
        delivery_id = generate_id("dlv")
        envelope = WebhookEnvelope.build(
            event=event,
            data=data,
            webhook_id=subscription.id,
            delivery_id=delivery_id,
        )
        delivery = Delivery(
            id=delivery_id,
            subscription_id=subscription.id,
            event=event,
            payload=envelope.to_json(),
        )
        await self._storage.create_delivery(delivery)

        await self._attempt(subscription, delivery)
        return delivery.id

    async def _attempt(self, subscription: Subscription, delivery: Delivery) -> Delivery:
        """Send the stored payload once and persist the outcome.

        Args:
            subscription: Owning subscription.
            delivery: Delivery in PENDING state with its attempt already counted.

        Returns:
            The delivery with its new status.
        """
        try:
            headers = build_headers(
                event=delivery.event,
                delivery_id=delivery.id,
                payload=delivery.payload,
                secret=subscription.secret,
                custom_headers=subscription.custom_headers,
                user_agent=self._user_agent,
            )
            async with self._semaphore:
                result = await self._transport.send(
                    str(subscription.url),
                    headers=headers,
                    body=delivery.payload,
                    timeout_seconds=subscription.timeout_seconds,
                )
        except TransportError as e:
            self._record_failure(subscription, delivery, e.message)
        except Exception as e:
            # The row must leave PENDING whatever the attempt raised
            logger.exception("Unexpected error sending delivery %s", delivery.id)
            self._record_failure(
                subscription, delivery, f"Unexpected error: {str(e) or type(e).__name__}"
            )
        else:
            if result.ok:
                delivery.mark_success(
                    response_code=result.status_code,
                    response_body=result.body_text,
                    limit=self._response_body_limit,
                )
                logger.info(
                    "Webhook delivered: %s to %s (status %d, attempt %d)",
                    delivery.event,
                    subscription.url,
                    result.status_code,
                    delivery.attempt,
                )
            else:
                self._record_failure(
                    subscription,
                    delivery,
                    f"HTTP {result.status_code}: {result.body_text or ''}",
                    response_code=result.status_code,
                    response_body=result.body_text,
                )

        await self._storage.save_delivery_state(delivery)
        return delivery

    def _record_failure(
        self,
        subscription: Subscription,
        delivery: Delivery,
        error: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        retry_at = next_retry_at(delivery.attempt, subscription.retry_count)
        delivery.mark_failed(
            error=error,
            next_retry_at=retry_at,
            response_code=response_code,
            response_body=response_body,
            limit=self._response_body_limit,
        )
        if retry_at is None:
            logger.warning(
                "Webhook retries exhausted: %s to %s after %d attempts: %s",
                delivery.event,
                subscription.url,
                delivery.attempt,
                error,
            )
        else:
            logger.warning(
                "Webhook failed: %s to %s (attempt %d), retry at %s: %s",
                delivery.event,
                subscription.url,
                delivery.attempt,
                retry_at.isoformat(),
                error,
            )

    async def retry_due(self, now: datetime | None = None) -> RetrySweepResult:
        """Resend FAILED deliveries whose retry time has passed.

        Safe to run from overlapping invocations: each row is claimed with a
        compare-and-set before it is resent, and a lost claim is skipped.

        Args:
            now: Reference time. Defaults to the current UTC time.

        Returns:
            RetrySweepResult with per-outcome counts.
        """
        result = RetrySweepResult()
        try:
            due = await self._storage.get_due_deliveries(now=now, limit=self._retry_batch_size)
        except Exception:
            logger.exception("Could not load due deliveries")
            return result

        result.scanned = len(due)
        if not due:
            return result

        outcomes = await asyncio.gather(
            *(self._retry_one(delivery) for delivery in due),
            return_exceptions=True,
        )
        for delivery, outcome in zip(due, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Retry of delivery %s failed: %s", delivery.id, outcome, exc_info=outcome
                )
                result.skipped += 1
            elif outcome == "retried":
                result.retried += 1
            elif outcome == "finalized":
                result.finalized += 1
            else:
                result.skipped += 1

        logger.info(
            "Retry sweep: %d due, %d retried, %d finalized, %d skipped",
            result.scanned,
            result.retried,
            result.finalized,
            result.skipped,
        )
        return result

    async def _retry_one(self, delivery: Delivery) -> str:
        """Handle one due delivery. Returns retried, finalized or skipped."""
        subscription = await self._storage.get_subscription(delivery.subscription_id)
        if subscription is None or not subscription.active:
            return "skipped"

        if delivery.attempt >= subscription.retry_count:
            await self._storage.save_delivery_state(delivery.mark_exhausted())
            logger.info(
                "Delivery %s finalized after %d attempts", delivery.id, delivery.attempt
            )
            return "finalized"

        claimed = await self._storage.claim_delivery(delivery.id, delivery.attempt)
        if claimed is None:
            return "skipped"

        await self._attempt(subscription, claimed)
        return "retried"

    async def redeliver(self, delivery_ids: list[str]) -> int:
        """Resend specific deliveries immediately.

        A delivery is eligible when it exists, is FAILED, its subscription
        is active and it has attempts left. The same record is claimed and
        the stored payload is resent.

        Args:
            delivery_ids: Deliveries to resend.

        Returns:
            Number of deliveries resent.
        """
        retried = 0
        for delivery_id in delivery_ids:
            delivery = await self._storage.get_delivery(delivery_id)
            if delivery is None or delivery.status != "FAILED":
                continue
            subscription = await self._storage.get_subscription(delivery.subscription_id)
            if subscription is None or not subscription.active:
                continue
            if delivery.attempt >= subscription.retry_count:
                continue

            claimed = await self._storage.claim_delivery(delivery.id, delivery.attempt)
            if claimed is None:
                continue
            await self._attempt(subscription, claimed)
            retried += 1

        logger.info("Manually redelivered %d of %d deliveries", retried, len(delivery_ids))
        return retried

    async def validate_endpoint(
        self,
        url: str,
        secret: str | None = None,
        timeout_seconds: float | None = None,
    ) -> bool:
        """Check that an endpoint accepts a synthetic ``webhook.test`` event.

        Uses the same signing and transport path as real deliveries. Nothing
        is written to the ledger.

        Args:
            url: Endpoint to check.
            secret: Secret to sign the test payload with.
            timeout_seconds: Override for the validation timeout.

        Returns:
            True if the endpoint answered with a 2xx status.
        """
        payload = WebhookEnvelope.build(
            event=TEST_EVENT,
            data={"test": True},
            webhook_id=TEST_DELIVERY_ID,
            delivery_id=TEST_DELIVERY_ID,
        ).to_json()
        headers = build_headers(
            event=TEST_EVENT,
            delivery_id=TEST_DELIVERY_ID,
            payload=payload,
            secret=secret,
            user_agent=self._user_agent,
        )

        try:
            result = await self._transport.send(
                url,
                headers=headers,
                body=payload,
                timeout_seconds=timeout_seconds or self._validation_timeout,
            )
        except TransportError as e:
            logger.warning("Endpoint validation failed for %s: %s", url, e.message)
            return False

        if not result.ok:
            logger.warning(
                "Endpoint validation failed for %s: HTTP %d", url, result.status_code
            )
        return result.ok
