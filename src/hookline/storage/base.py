"""Base storage class and helpers.

Contains client lifecycle, collection management, and the low-level Qdrant
calls shared by the subscription and delivery mixins. Records carry no
embeddings; every point gets the same one-dimensional placeholder vector.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import defaultdict
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from hookline.config import settings
from hookline.exceptions import StorageError

from .retry import qdrant_retry

ModelT = TypeVar("ModelT", bound=BaseModel)

COLLECTION_NAMES = {
    "subscriptions": "subscriptions",
    "deliveries": "deliveries",
    "delivery_jobs": "delivery_jobs",
}

# Keyword/float payload indexes per collection
PAYLOAD_INDEXES: dict[str, dict[str, models.PayloadSchemaType]] = {
    "subscriptions": {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "events": models.PayloadSchemaType.KEYWORD,
        "status": models.PayloadSchemaType.KEYWORD,
    },
    "deliveries": {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "subscription_id": models.PayloadSchemaType.KEYWORD,
        "status": models.PayloadSchemaType.KEYWORD,
        "created_ts": models.PayloadSchemaType.FLOAT,
    },
    "delivery_jobs": {
        "delivery_id": models.PayloadSchemaType.KEYWORD,
        "visible_ts": models.PayloadSchemaType.FLOAT,
    },
}

PLACEHOLDER_VECTOR = [1.0]

# Derived payload fields used only for filtering
DERIVED_FIELDS = ("created_ts",)


class StorageBase:
    """Base class for Hookline storage with initialization and helpers.

    Provides:
    - Client initialization and lifecycle management
    - Collection creation and indexing
    - Point ID conversion
    - Payload serialization/deserialization
    - Per-subscription and per-delivery locks for read-modify-write updates
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        max_scroll_limit: int | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL, or ":memory:" for local in-memory mode.
                Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
            max_scroll_limit: Upper bound on records read by list queries.
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._max_scroll_limit = max_scroll_limit or settings.storage_max_scroll_limit
        self._client: AsyncQdrantClient | None = None
        self._collections_initialized = False
        self._subscription_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._delivery_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise StorageError("Storage not initialized. Call initialize() first.")
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

    def _collection_name(self, kind: str) -> str:
        """Get full collection name with prefix."""
        suffix = COLLECTION_NAMES.get(kind, kind)
        return f"{self._prefix}_{suffix}"

    @staticmethod
    def _key_to_point_id(key: str) -> str:
        """Convert a record key to a valid Qdrant point ID.

        Qdrant requires point IDs to be UUIDs or unsigned integers.
        We hash the key to create a deterministic UUID-format string.
        """
        h = hashlib.sha256(key.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    def _point_id(self, kind: str, record_id: str) -> str:
        return self._key_to_point_id(f"{kind}/{record_id}")

    async def _ensure_collections(self) -> None:
        """Ensure all required collections exist with their indexes."""
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind in COLLECTION_NAMES:
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue
            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=len(PLACEHOLDER_VECTOR),
                    distance=models.Distance.DOT,
                ),
            )
            for field_name, schema in PAYLOAD_INDEXES[kind].items():
                await self.client.create_payload_index(
                    collection_name=collection_name,
                    field_name=field_name,
                    field_schema=schema,
                )

    @staticmethod
    def _model_to_payload(model: BaseModel) -> dict[str, Any]:
        """Convert a model to a Qdrant payload with derived filter fields."""
        data = model.model_dump(mode="json")
        created_at = getattr(model, "created_at", None)
        if isinstance(created_at, datetime):
            data["created_ts"] = created_at.timestamp()
        return data

    @staticmethod
    def _payload_to_model(payload: dict[str, Any], model_class: type[ModelT]) -> ModelT:
        """Convert Qdrant payload back to a model."""
        data = dict(payload)
        for name in DERIVED_FIELDS:
            data.pop(name, None)
        return model_class.model_validate(data)

    @qdrant_retry
    async def _upsert(self, kind: str, record_id: str, payload: dict[str, Any]) -> None:
        await self.client.upsert(
            collection_name=self._collection_name(kind),
            points=[
                models.PointStruct(
                    id=self._point_id(kind, record_id),
                    vector=PLACEHOLDER_VECTOR,
                    payload=payload,
                )
            ],
        )

    @qdrant_retry
    async def _retrieve(self, kind: str, record_id: str) -> dict[str, Any] | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._point_id(kind, record_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        return dict(results[0].payload)

    @qdrant_retry
    async def _delete(self, kind: str, record_id: str) -> None:
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=models.PointIdsList(points=[self._point_id(kind, record_id)]),
        )

    @qdrant_retry
    async def _count(self, kind: str, query_filter: models.Filter | None = None) -> int:
        result = await self.client.count(
            collection_name=self._collection_name(kind),
            count_filter=query_filter,
            exact=True,
        )
        return int(result.count)

    @qdrant_retry
    async def _delete_matching(self, kind: str, query_filter: models.Filter) -> None:
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=models.FilterSelector(filter=query_filter),
        )

    @qdrant_retry
    async def _scroll_page(
        self,
        kind: str,
        query_filter: models.Filter | None,
        limit: int,
        offset: Any = None,
        fields: list[str] | None = None,
    ) -> tuple[list[dict[str, Any]], Any]:
        points, next_offset = await self.client.scroll(
            collection_name=self._collection_name(kind),
            scroll_filter=query_filter,
            limit=limit,
            offset=offset,
            with_payload=fields if fields is not None else True,
        )
        return [dict(p.payload) for p in points if p.payload is not None], next_offset

    async def _scroll_all(
        self,
        kind: str,
        query_filter: models.Filter | None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Page through matching records, up to ``limit`` (default: scroll cap)."""
        cap = min(limit or self._max_scroll_limit, self._max_scroll_limit)
        payloads: list[dict[str, Any]] = []
        offset: Any = None
        while len(payloads) < cap:
            page, offset = await self._scroll_page(
                kind, query_filter, limit=min(256, cap - len(payloads)), offset=offset
            )
            payloads.extend(page)
            if offset is None:
                break
        return payloads

    @staticmethod
    def _match(key: str, value: Any) -> models.FieldCondition:
        return models.FieldCondition(key=key, match=models.MatchValue(value=value))

    @qdrant_retry
    async def _scroll_ordered(
        self,
        kind: str,
        query_filter: models.Filter | None,
        order_key: str,
        limit: int,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        """Read the first ``limit`` matching records ordered by an indexed payload key."""
        direction = models.Direction.DESC if descending else models.Direction.ASC
        points, _ = await self.client.scroll(
            collection_name=self._collection_name(kind),
            scroll_filter=query_filter,
            limit=limit,
            order_by=models.OrderBy(key=order_key, direction=direction),
            with_payload=True,
        )
        return [dict(p.payload) for p in points if p.payload is not None]

    async def _iter_pages(
        self,
        kind: str,
        query_filter: models.Filter | None,
        fields: list[str] | None = None,
        page_size: int = 256,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield every matching record page by page, with no overall cap.

        For aggregations that must see all records without holding them in
        memory at once.
        """
        offset: Any = None
        while True:
            points, offset = await self._scroll_page(
                kind, query_filter, limit=page_size, offset=offset, fields=fields
            )
            if points:
                yield points
            if offset is None:
                return

