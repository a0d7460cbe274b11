"""Base storage class and helpers.

Contains initialization, collection management, and shared utilities.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from dealhook.config import settings
from dealhook.models import Delivery, Subscription

RecordT = TypeVar("RecordT", Subscription, Delivery)

# Collection names by record kind
COLLECTION_NAMES = {
    "webhooks": "webhooks",
    "deliveries": "webhook_deliveries",
}

# Records are looked up by payload filters only; vectors are a placeholder
PLACEHOLDER_VECTOR_SIZE = 1
PLACEHOLDER_VECTOR = [0.0]

# Bookkeeping fields written beside the record (range filters, claims), stripped when loading
DERIVED_FIELDS = ("created_ts", "next_retry_ts", "claim_token")

# Keyword payload indexes per collection
KEYWORD_INDEXES = {
    "webhooks": (),
    "deliveries": ("subscription_id", "status", "event"),
}
FLOAT_INDEXES = {
    "webhooks": ("created_ts",),
    "deliveries": ("created_ts", "next_retry_ts"),
}

DEFAULT_MAX_SCROLL = 10000


def timestamp_or_none(value: datetime | None) -> float | None:
    """Epoch seconds for range filters."""
    return value.timestamp() if value is not None else None


class StorageBase:
    """Base class for Dealhook storage with initialization and helpers.

    Provides:
    - Client initialization and lifecycle management
    - Collection creation and indexing
    - Point ID conversion
    - Payload serialization/deserialization
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        max_scroll: int = DEFAULT_MAX_SCROLL,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL, or ":memory:" for in-process storage.
                Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
            max_scroll: Maximum records read by a single list operation.
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._max_scroll = max_scroll
        self._client: AsyncQdrantClient | None = None
        self._collections_initialized = False

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Initialize the storage client and ensure collections exist."""
        if self._url == ":memory:":
            self._client = AsyncQdrantClient(location=":memory:")
        else:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()
        self._collections_initialized = True

    async def close(self) -> None:
        """Close the storage client connection."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._collections_initialized = False

    async def __aenter__(self) -> StorageBase:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _collection_name(self, kind: str) -> str:
        """Get full collection name with prefix."""
        suffix = COLLECTION_NAMES.get(kind, kind)
        return f"{self._prefix}_{suffix}"

    @staticmethod
    def _point_id(record_id: str) -> str:
        """Convert a record ID to a valid Qdrant point ID.

        Qdrant requires point IDs to be UUIDs or unsigned integers.
        We hash the record ID to create a deterministic UUID-format string.
        """
        h = hashlib.sha256(record_id.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    async def _ensure_collections(self) -> None:
        """Ensure all required collections exist with payload indexes."""
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind in COLLECTION_NAMES:
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue

            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=PLACEHOLDER_VECTOR_SIZE,
                    distance=models.Distance.DOT,
                ),
            )
            await self._create_indexes(kind, collection_name)

    async def _create_indexes(self, kind: str, collection_name: str) -> None:
        """Create payload indexes for efficient filtering."""
        for field_name in KEYWORD_INDEXES.get(kind, ()):
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
        for field_name in FLOAT_INDEXES.get(kind, ()):
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.FLOAT,
            )
        if kind == "webhooks":
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name="active",
                field_schema=models.PayloadSchemaType.BOOL,
            )

    def _record_to_payload(self, record: BaseModel) -> dict[str, Any]:
        """Convert a record model to Qdrant payload."""
        data = record.model_dump(mode="json")
        data["created_ts"] = timestamp_or_none(getattr(record, "created_at", None))
        if isinstance(record, Delivery):
            data["next_retry_ts"] = timestamp_or_none(record.next_retry_at)
        return data

    def _payload_to_record(self, payload: dict[str, Any], record_class: type[RecordT]) -> RecordT:
        """Convert Qdrant payload back to a record model."""
        data = {k: v for k, v in payload.items() if k not in DERIVED_FIELDS}
        return record_class.model_validate(data)

    async def _scroll_all(
        self,
        collection_name: str,
        scroll_filter: models.Filter | None,
        max_records: int | None = None,
    ) -> list[models.Record]:
        """Scroll every point matching the filter, up to max_records."""
        cap = max_records or self._max_scroll
        records: list[models.Record] = []
        offset: models.ExtendedPointId | None = None

        while len(records) < cap:
            batch, offset = await self.client.scroll(
                collection_name=collection_name,
                scroll_filter=scroll_filter,
                limit=min(256, cap - len(records)),
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            records.extend(batch)
            if offset is None:
                break

        return records
