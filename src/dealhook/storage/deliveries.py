"""Delivery ledger operations for Dealhook storage.

Every Delivery is one event instance sent to one subscription. The record
is created once and then only patched: status, attempt counters, last
response and the retry schedule change; the payload never does.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from qdrant_client import models

from dealhook.models import Delivery, DeliveryStats, utc_now
from dealhook.storage.retry import qdrant_retry

from .base import PLACEHOLDER_VECTOR, timestamp_or_none

if TYPE_CHECKING:
    from qdrant_client import AsyncQdrantClient

logger = logging.getLogger(__name__)

# Fields a ledger patch may touch
MUTABLE_DELIVERY_FIELDS = frozenset(
    {
        "status",
        "attempt",
        "response_code",
        "response_body",
        "error",
        "delivered_at",
        "next_retry_at",
        "updated_at",
    }
)


def _to_payload_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class DeliveryMixin:
    """Mixin providing delivery ledger operations for WebhookStorage.

    This mixin expects the following attributes/methods from the base class:
    - _collection_name(kind) -> str
    - _point_id(record_id) -> str
    - _record_to_payload(record) -> dict
    - _payload_to_record(payload, record_class) -> record
    - _scroll_all(collection_name, scroll_filter, max_records) -> list
    - get_active_subscription_ids() -> list[str]
    - client: AsyncQdrantClient
    """

    _collection_name: Any
    _point_id: Any
    _record_to_payload: Any
    _payload_to_record: Any
    _scroll_all: Any
    get_active_subscription_ids: Any
    client: AsyncQdrantClient

    @qdrant_retry
    async def create_delivery(self, delivery: Delivery) -> str:
        """Persist a new delivery record.

        Args:
            delivery: Delivery to store. Its id must already be embedded in
                the payload envelope.

        Returns:
            The delivery ID.
        """
        await self.client.upsert(
            collection_name=self._collection_name("deliveries"),
            points=[
                models.PointStruct(
                    id=self._point_id(delivery.id),
                    vector=PLACEHOLDER_VECTOR,
                    payload=self._record_to_payload(delivery),
                )
            ],
            wait=True,
        )
        return delivery.id

    @qdrant_retry
    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        """Get a delivery by ID.

        Returns:
            Delivery or None if not found.
        """
        results = await self.client.retrieve(
            collection_name=self._collection_name("deliveries"),
            ids=[self._point_id(delivery_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None

        delivery: Delivery = self._payload_to_record(results[0].payload, Delivery)
        return delivery

    @qdrant_retry
    async def update_delivery(self, delivery_id: str, **patch: Any) -> None:
        """Apply a partial update to a delivery record.

        Args:
            delivery_id: ID of the delivery to patch.
            **patch: Mutable fields to overwrite. ``updated_at`` defaults to now.

        Raises:
            ValueError: If the patch names the payload or an unknown field.
        """
        unknown = set(patch) - MUTABLE_DELIVERY_FIELDS
        if unknown:
            raise ValueError(f"Cannot update delivery fields: {sorted(unknown)}")

        patch.setdefault("updated_at", utc_now())
        payload = {key: _to_payload_value(value) for key, value in patch.items()}
        if "next_retry_at" in patch:
            payload["next_retry_ts"] = timestamp_or_none(patch["next_retry_at"])

        await self.client.set_payload(
            collection_name=self._collection_name("deliveries"),
            payload=payload,
            points=[self._point_id(delivery_id)],
            wait=True,
        )

    async def save_delivery_state(self, delivery: Delivery) -> None:
        """Write every mutable field of an in-memory Delivery back to the ledger."""
        await self.update_delivery(
            delivery.id,
            **{field: getattr(delivery, field) for field in MUTABLE_DELIVERY_FIELDS},
        )

    async def claim_delivery(self, delivery_id: str, expected_attempt: int) -> Delivery | None:
        """Claim a FAILED delivery for its next attempt.

        Compare-and-set: the write only applies while the row is still FAILED
        at ``expected_attempt``. The winner flips it to PENDING, increments
        the attempt and clears the retry schedule. A claim token written with
        the patch tells the winner apart from a concurrent claimer.

        Args:
            delivery_id: ID of the delivery to claim.
            expected_attempt: Attempt count observed when the row was read.

        Returns:
            The claimed Delivery, or None if the row changed underneath us.
        """
        collection = self._collection_name("deliveries")
        point_id = self._point_id(delivery_id)
        token = uuid.uuid4().hex

        await self.client.set_payload(
            collection_name=collection,
            payload={
                "status": "PENDING",
                "attempt": expected_attempt + 1,
                "next_retry_at": None,
                "next_retry_ts": None,
                "updated_at": utc_now().isoformat(),
                "claim_token": token,
            },
            points=models.Filter(
                must=[
                    models.HasIdCondition(has_id=[point_id]),
                    models.FieldCondition(key="status", match=models.MatchValue(value="FAILED")),
                    models.FieldCondition(
                        key="attempt", match=models.MatchValue(value=expected_attempt)
                    ),
                ]
            ),
            wait=True,
        )

        results = await self.client.retrieve(
            collection_name=collection,
            ids=[point_id],
            with_payload=True,
        )
        if not results or not results[0].payload:
            return None
        if results[0].payload.get("claim_token") != token:
            logger.debug("Lost claim on delivery %s at attempt %d", delivery_id, expected_attempt)
            return None

        claimed: Delivery = self._payload_to_record(results[0].payload, Delivery)
        return claimed

    @qdrant_retry
    async def get_due_deliveries(
        self,
        now: datetime | None = None,
        limit: int = 50,
    ) -> list[Delivery]:
        """Get FAILED deliveries whose retry time has passed.

        Only rows of active subscriptions are returned, so deactivated
        subscriptions cannot fill the batch.

        Args:
            now: Reference time. Defaults to the current UTC time.
            limit: Maximum deliveries to return.

        Returns:
            Due deliveries, earliest next_retry_at first.
        """
        now = now or utc_now()
        active_ids = await self.get_active_subscription_ids()
        if not active_ids:
            return []

        # Ordered by the next_retry_ts range index so only one batch is read
        records, _ = await self.client.scroll(
            collection_name=self._collection_name("deliveries"),
            scroll_filter=models.Filter(
                must=[
                    models.FieldCondition(key="status", match=models.MatchValue(value="FAILED")),
                    models.FieldCondition(key="next_retry_ts", range=models.Range(lte=now.timestamp())),
                    models.FieldCondition(
                        key="subscription_id", match=models.MatchAny(any=active_ids)
                    ),
                ]
            ),
            limit=limit,
            order_by=models.OrderBy(key="next_retry_ts", direction=models.Direction.ASC),
            with_payload=True,
            with_vectors=False,
        )
        return [self._payload_to_record(r.payload, Delivery) for r in records if r.payload]

    def _delivery_filter(
        self,
        subscription_id: str | None = None,
        status: str | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> models.Filter | None:
        conditions: list[models.Condition] = []
        if subscription_id is not None:
            conditions.append(
                models.FieldCondition(
                    key="subscription_id", match=models.MatchValue(value=subscription_id)
                )
            )
        if status is not None:
            conditions.append(
                models.FieldCondition(key="status", match=models.MatchValue(value=status))
            )
        if event is not None:
            conditions.append(
                models.FieldCondition(key="event", match=models.MatchValue(value=event))
            )
        if since is not None or until is not None:
            conditions.append(
                models.FieldCondition(
                    key="created_ts",
                    range=models.Range(
                        gte=timestamp_or_none(since),
                        lte=timestamp_or_none(until),
                    ),
                )
            )
        return models.Filter(must=conditions) if conditions else None

    @qdrant_retry
    async def list_deliveries(
        self,
        subscription_id: str | None = None,
        status: str | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Delivery]:
        """List deliveries matching the filters, newest first.

        Args:
            subscription_id: Only deliveries of this subscription.
            status: Only deliveries with this status.
            event: Only deliveries of this event.
            since: Only deliveries created at or after this time.
            until: Only deliveries created at or before this time.
            limit: Maximum deliveries to return.
            offset: Number of deliveries to skip.

        Returns:
            List of Delivery sorted by created_at descending.
        """
        records = await self._scroll_all(
            self._collection_name("deliveries"),
            self._delivery_filter(subscription_id, status, event, since, until),
        )
        deliveries: list[Delivery] = [
            self._payload_to_record(r.payload, Delivery) for r in records if r.payload
        ]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[offset : offset + limit]

    @qdrant_retry
    async def count_deliveries(
        self,
        subscription_id: str | None = None,
        status: str | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        """Count deliveries matching the filters."""
        result = await self.client.count(
            collection_name=self._collection_name("deliveries"),
            count_filter=self._delivery_filter(subscription_id, status, event, since, until),
            exact=True,
        )
        return result.count

    async def get_delivery_stats(
        self,
        subscription_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> DeliveryStats:
        """Aggregate delivery counts by status.

        Args:
            subscription_id: Restrict to one subscription.
            since: Only deliveries created at or after this time.
            until: Only deliveries created at or before this time.

        Returns:
            DeliveryStats with a success rate percentage.
        """
        total = await self.count_deliveries(subscription_id, since=since, until=until)
        successful = await self.count_deliveries(
            subscription_id, status="SUCCESS", since=since, until=until
        )
        failed = await self.count_deliveries(
            subscription_id, status="FAILED", since=since, until=until
        )
        pending = await self.count_deliveries(
            subscription_id, status="PENDING", since=since, until=until
        )
        return DeliveryStats.from_counts(
            total=total, successful=successful, failed=failed, pending=pending
        )

    @qdrant_retry
    async def delete_deliveries_for_subscription(self, subscription_id: str) -> int:
        """Delete every delivery of a subscription.

        Returns:
            Number of deliveries removed.
        """
        removed = await self.count_deliveries(subscription_id)
        if removed:
            await self.client.delete(
                collection_name=self._collection_name("deliveries"),
                points_selector=models.FilterSelector(
                    filter=self._delivery_filter(subscription_id=subscription_id)
                ),
                wait=True,
            )
        return removed
