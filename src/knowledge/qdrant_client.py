"""Qdrant-backed vector index for document chunks.

Wraps the async Qdrant client to provide:
- Lazy collection creation: the vector size is inferred from the first batch
  written, so the index works with whichever embedding backend resolved.
  Keyword payload indexes on document_id and kb_id are added on creation
- Serialized creation, so concurrent ingestion runs cannot race to create
  the collection
- Cosine similarity search returning scores clamped to [0, 1], optionally
  scoped to a knowledge base through a payload filter
- Best-effort deletion of every chunk belonging to a document

Backend failures are classified into an IndexErrorKind and raised as
VectorIndexError. A missing collection is the benign empty state of a fresh
install: queries return no hits and deletions succeed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.errors import IndexErrorKind, VectorIndexError
from src.knowledge.models import KnowledgeChunk

logger = logging.getLogger(__name__)

# Payload fields used in filters; remote servers in strict mode require an index
INDEXED_PAYLOAD_FIELDS = ("document_id", "kb_id")


class VectorHit(BaseModel):
    """A chunk returned by similarity search.

    Attributes:
        chunk_id: Chunk identifier.
        document_id: Owning document.
        kb_id: Knowledge base stored with the chunk.
        content: Chunk text.
        chunk_index: Position of the chunk within its document.
        score: Cosine similarity clamped to [0, 1].
    """

    chunk_id: str
    document_id: str
    kb_id: str | None = None
    content: str
    chunk_index: int = 0
    score: float


def classify_error(exc: BaseException) -> IndexErrorKind:
    """Map a Qdrant client exception to an IndexErrorKind.

    Local mode reports a missing collection as ValueError("Collection ... not
    found"); the HTTP client raises UnexpectedResponse with a 404. A 400 that
    mentions an index or a payload schema means the filter cannot be used.
    """
    if isinstance(exc, UnexpectedResponse):
        content = (exc.content or b"").decode("utf-8", errors="replace").lower()
        if exc.status_code == 404:
            return IndexErrorKind.NOT_FOUND
        if exc.status_code == 400 and ("index" in content or "schema" in content):
            return IndexErrorKind.SCHEMA
        return IndexErrorKind.OTHER
    message = str(exc).lower()
    if "not found" in message or "doesn't exist" in message:
        return IndexErrorKind.NOT_FOUND
    if "index required" in message or "schema" in message:
        return IndexErrorKind.SCHEMA
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return IndexErrorKind.UNAVAILABLE
    return IndexErrorKind.OTHER


def _kb_filter(kb_id: str) -> Filter:
    return Filter(must=[FieldCondition(key="kb_id", match=MatchValue(value=kb_id))])


def _document_filter(document_id: str) -> Filter:
    return Filter(
        must=[FieldCondition(key="document_id", match=MatchValue(value=document_id))]
    )


class QdrantVectorIndex:
    """Chunk vector storage backed by a single Qdrant collection.

    Args:
        config: Knowledge base configuration. qdrant_url selects a remote
            server, otherwise a local on-disk store under qdrant_path is used.
        client: Optional pre-built client (tests pass a local-mode client).
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        self._collection = config.collection_name

        # Remote if URL provided, local otherwise
        if client is not None:
            self._client = client
        elif config.qdrant_url:
            self._client = AsyncQdrantClient(
                url=config.qdrant_url,
                api_key=config.qdrant_api_key,
            )
        else:
            self._client = AsyncQdrantClient(path=config.resolved_qdrant_path)

        self._lock = asyncio.Lock()
        self._ready = False

    @property
    def client(self) -> AsyncQdrantClient:
        """Expose the underlying Qdrant client for advanced operations."""
        return self._client

    @property
    def collection_name(self) -> str:
        return self._collection

    async def exists(self) -> bool:
        """Whether the chunk collection has been created."""
        if self._ready:
            return True
        try:
            self._ready = await self._client.collection_exists(self._collection)
        except Exception as exc:
            raise VectorIndexError(f"Collection check failed: {exc}", classify_error(exc)) from exc
        return self._ready

    async def ensure_collection(self, initial_records: list[KnowledgeChunk]) -> bool:
        """Open the collection, creating it from the first batch if absent.

        Args:
            initial_records: Chunks about to be written; the first embedding
                determines the vector size on creation.

        Returns:
            True if the collection exists after the call. False only when it
            is absent and no embedded record was supplied to size it.
        """
        if self._ready:
            return True

        async with self._lock:
            if await self.exists():
                return True

            sample = next((r.embedding for r in initial_records if r.embedding), None)
            if sample is None:
                return False

            try:
                await self._client.create_collection(
                    collection_name=self._collection,
                    vectors_config=VectorParams(size=len(sample), distance=Distance.COSINE),
                )
                for field in INDEXED_PAYLOAD_FIELDS:
                    await self._client.create_payload_index(
                        collection_name=self._collection,
                        field_name=field,
                        field_schema=PayloadSchemaType.KEYWORD,
                    )
            except Exception as exc:
                raise VectorIndexError(
                    f"Failed to create collection {self._collection}: {exc}",
                    classify_error(exc),
                ) from exc

            self._ready = True
            logger.info(
                "Created collection %s (dimension=%d)", self._collection, len(sample)
            )
            return True

    async def upsert(self, records: list[KnowledgeChunk]) -> int:
        """Write embedded chunks.

        Args:
            records: Chunks with embeddings. Chunks without one are skipped.

        Returns:
            Number of points written.

        Raises:
            VectorIndexError: If the write fails.
        """
        embedded = [r for r in records if r.embedding]
        if not embedded:
            return 0

        await self.ensure_collection(embedded)

        points = [
            PointStruct(
                id=record.id,
                vector=record.embedding,
                payload={
                    "document_id": record.document_id,
                    "kb_id": record.kb_id,
                    "content": record.content,
                    "chunk_index": record.chunk_index,
                    "created_at": record.created_at.isoformat(),
                },
            )
            for record in embedded
        ]

        try:
            await self._client.upsert(collection_name=self._collection, points=points)
        except Exception as exc:
            raise VectorIndexError(f"Upsert failed: {exc}", classify_error(exc)) from exc

        logger.debug("Upserted %d chunks into %s", len(points), self._collection)
        return len(points)

    async def query(
        self,
        vector: list[float],
        k: int,
        kb_id: str | None = None,
    ) -> list[VectorHit]:
        """Return the k chunks most similar to vector.

        Args:
            vector: Query embedding.
            k: Maximum hits.
            kb_id: Restrict hits to this knowledge base via a payload filter.

        Returns:
            Hits ordered by descending score. Empty if the collection does
            not exist yet.

        Raises:
            VectorIndexError: For failures other than a missing collection.
                Callers retry without kb_id when the kind is SCHEMA.
        """
        if not vector or k <= 0:
            return []
        if not await self.exists():
            return []

        try:
            response = await self._client.query_points(
                collection_name=self._collection,
                query=vector,
                limit=k,
                query_filter=_kb_filter(kb_id) if kb_id else None,
                with_payload=True,
            )
        except Exception as exc:
            kind = classify_error(exc)
            if kind == IndexErrorKind.NOT_FOUND:
                self._ready = False
                return []
            raise VectorIndexError(f"Query failed: {exc}", kind) from exc

        hits: list[VectorHit] = []
        for point in response.points:
            payload: dict[str, Any] = point.payload or {}
            hits.append(
                VectorHit(
                    chunk_id=str(point.id),
                    document_id=payload.get("document_id", ""),
                    kb_id=payload.get("kb_id"),
                    content=payload.get("content", ""),
                    chunk_index=payload.get("chunk_index", 0),
                    score=min(1.0, max(0.0, float(point.score))),
                )
            )
        return hits

    async def count_for_document(self, document_id: str) -> int:
        """Count the chunks stored for a document (0 if no collection)."""
        if not await self.exists():
            return 0
        try:
            result = await self._client.count(
                collection_name=self._collection,
                count_filter=_document_filter(document_id),
                exact=True,
            )
        except Exception as exc:
            kind = classify_error(exc)
            if kind == IndexErrorKind.NOT_FOUND:
                return 0
            raise VectorIndexError(f"Count failed: {exc}", kind) from exc
        return result.count

    async def delete_by_document(self, document_id: str) -> bool:
        """Delete every chunk of a document.

        A missing collection counts as success.

        Returns:
            True once no chunk of the document remains.

        Raises:
            VectorIndexError: For failures other than a missing collection.
        """
        if not await self.exists():
            return True
        try:
            await self._client.delete(
                collection_name=self._collection,
                points_selector=FilterSelector(filter=_document_filter(document_id)),
            )
        except Exception as exc:
            kind = classify_error(exc)
            if kind == IndexErrorKind.NOT_FOUND:
                logger.debug("Collection missing while deleting %s, nothing to do", document_id)
                return True
            raise VectorIndexError(f"Delete failed: {exc}", kind) from exc

        logger.info("Deleted chunks for document %s", document_id)
        return True

    async def close(self) -> None:
        await self._client.close()
