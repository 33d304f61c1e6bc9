"""Hybrid retriever combining vector and keyword search.

Three modes:
- semantic: chunk-level hits from the vector index, raw similarity scores
- keyword: document-level hits from the full-text index, normalised scores
- hybrid: both legs run concurrently and are fused per document as
  semantic_score * semantic_weight + keyword_score * keyword_weight

Each leg over-fetches twice the requested limit to leave room for
post-filtering. Results are joined with the metadata store; hits whose
document no longer exists or is not yet indexed are dropped. Post-filters
apply in order: knowledge base, type, tags (any match), creation date range.
A failing leg degrades to an empty leg so search never fails for a missing or
broken index.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.documents.repository import DocumentRepository
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.errors import (
    ConfigurationError,
    EmbeddingBackendError,
    IndexErrorKind,
    KeywordIndexError,
    VectorIndexError,
)
from src.knowledge.keyword_index import KeywordHit, KeywordIndex
from src.knowledge.models import (
    DocumentRecord,
    DocumentStatus,
    Provenance,
    RetrievalResult,
    SearchMode,
    SearchOptions,
)
from src.knowledge.qdrant_client import QdrantVectorIndex, VectorHit

logger = logging.getLogger(__name__)

OVERFETCH_FACTOR = 2


def fuse_results(
    semantic_hits: list[VectorHit],
    keyword_hits: list[KeywordHit],
    semantic_weight: float = 0.6,
    keyword_weight: float = 0.4,
) -> list[RetrievalResult]:
    """Fuse both legs into one document-level ranking.

    Semantic hits contribute score * semantic_weight, keeping the best chunk
    per document. A keyword hit adds score * keyword_weight to an existing
    entry (provenance becomes hybrid) or creates a keyword-only entry.

    Returns:
        Fused results sorted by descending score.
    """
    fused: dict[str, RetrievalResult] = {}

    for hit in semantic_hits:
        weighted = hit.score * semantic_weight
        current = fused.get(hit.document_id)
        if current is None or weighted > current.score:
            fused[hit.document_id] = RetrievalResult(
                document_id=hit.document_id,
                text=hit.content,
                score=weighted,
                provenance=Provenance.SEMANTIC,
                chunk_id=hit.chunk_id,
            )

    seen_keyword: set[str] = set()
    for hit in keyword_hits:
        if hit.document_id in seen_keyword:
            continue
        seen_keyword.add(hit.document_id)
        contribution = hit.score * keyword_weight
        current = fused.get(hit.document_id)
        if current is not None:
            current.score += contribution
            current.provenance = Provenance.HYBRID
        else:
            fused[hit.document_id] = RetrievalResult(
                document_id=hit.document_id,
                text=hit.snippet,
                score=contribution,
                provenance=Provenance.KEYWORD,
            )

    return sorted(fused.values(), key=lambda r: r.score, reverse=True)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _passes_filters(record: DocumentRecord, options: SearchOptions) -> bool:
    """Apply post-filters in order: kb, type, tags, date range."""
    if options.kb_id is not None and record.kb_id != options.kb_id:
        return False
    if options.types and record.type not in options.types:
        return False
    if options.tags and not set(options.tags).intersection(record.tags):
        return False
    created_at = _as_utc(record.created_at)
    date_from = _as_utc(options.date_from)
    date_to = _as_utc(options.date_to)
    if date_from is not None and created_at < date_from:
        return False
    if date_to is not None and created_at > date_to:
        return False
    return True


class HybridRetriever:
    """Runs semantic, keyword or hybrid search and enriches the results.

    Args:
        config: Knowledge base configuration (fusion weights, default limit).
        embedder: Embeds the query for the semantic leg.
        vector_index: Chunk vector index; None means not configured.
        keyword_index: Full-text index; None or disabled yields no keyword hits.
        documents: Metadata repository used for the join.
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        embedder: EmbeddingService,
        vector_index: QdrantVectorIndex | None,
        keyword_index: KeywordIndex | None,
        documents: DocumentRepository,
    ) -> None:
        self._config = config
        self._embedder = embedder
        self._vectors = vector_index
        self._keywords = keyword_index
        self._documents = documents

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[RetrievalResult]:
        """Search the knowledge base.

        Args:
            query: Natural language or keyword query.
            options: Mode, limit and filters. Defaults to hybrid search with
                the configured default limit.

        Returns:
            At most options.limit results, best first.

        Raises:
            ConfigurationError: If a mode needing the vector index is used
                without one.
        """
        if options is None:
            options = SearchOptions(limit=self._config.default_search_limit)
        if not query or not query.strip():
            return []
        if options.mode != SearchMode.KEYWORD and self._vectors is None:
            raise ConfigurationError("Vector index is not configured")

        fetch = options.limit * OVERFETCH_FACTOR

        if options.mode == SearchMode.SEMANTIC:
            hits = await self._semantic_leg(query, fetch, options.kb_id)
            candidates = [
                RetrievalResult(
                    document_id=hit.document_id,
                    text=hit.content,
                    score=hit.score,
                    provenance=Provenance.SEMANTIC,
                    chunk_id=hit.chunk_id,
                )
                for hit in hits
            ]
        elif options.mode == SearchMode.KEYWORD:
            keyword_hits = await self._keyword_leg(query, fetch, options.kb_id)
            candidates = [
                RetrievalResult(
                    document_id=hit.document_id,
                    text=hit.snippet,
                    score=hit.score,
                    provenance=Provenance.KEYWORD,
                )
                for hit in keyword_hits
            ]
        else:
            semantic_hits, keyword_hits = await asyncio.gather(
                self._semantic_leg(query, fetch, options.kb_id),
                self._keyword_leg(query, fetch, options.kb_id),
            )
            candidates = fuse_results(
                semantic_hits,
                keyword_hits,
                self._config.semantic_weight,
                self._config.keyword_weight,
            )

        results = await self._join_and_filter(candidates, options)
        logger.debug(
            "Search mode=%s returned %d of %d candidates", options.mode.value, len(results), len(candidates)
        )
        return results

    async def _semantic_leg(self, query: str, k: int, kb_id: str | None) -> list[VectorHit]:
        try:
            vector = await self._embedder.embed(query)
        except EmbeddingBackendError as exc:
            logger.warning("Query embedding failed, semantic leg empty: %s", exc)
            return []
        if not vector:
            return []

        try:
            return await self._vectors.query(vector, k, kb_id=kb_id)
        except VectorIndexError as exc:
            if exc.kind == IndexErrorKind.SCHEMA and kb_id is not None:
                logger.info("Vector index rejected kb filter, retrying unfiltered")
                try:
                    return await self._vectors.query(vector, k)
                except VectorIndexError as retry_exc:
                    logger.warning("Unfiltered vector query failed: %s", retry_exc)
                    return []
            logger.warning("Vector query failed (%s), semantic leg empty: %s", exc.kind.value, exc)
            return []

    async def _keyword_leg(self, query: str, k: int, kb_id: str | None) -> list[KeywordHit]:
        if self._keywords is None or not self._keywords.enabled:
            return []
        try:
            return await self._keywords.query(query, k, kb_id=kb_id)
        except KeywordIndexError as exc:
            logger.warning("Keyword query failed, keyword leg empty: %s", exc)
            return []

    async def _join_and_filter(
        self,
        candidates: list[RetrievalResult],
        options: SearchOptions,
    ) -> list[RetrievalResult]:
        if not candidates:
            return []
        records = await self._documents.get_many([c.document_id for c in candidates])

        results: list[RetrievalResult] = []
        for candidate in candidates:
            record = records.get(candidate.document_id)
            # Chunks of a document still being written are not searchable yet
            if record is None or record.status != DocumentStatus.INDEXED:
                continue
            if not _passes_filters(record, options):
                continue
            results.append(
                candidate.model_copy(
                    update={
                        "name": record.name,
                        "type": record.type,
                        "tags": list(record.tags),
                        "kb_id": record.kb_id,
                        "created_at": record.created_at,
                    }
                )
            )
            if len(results) >= options.limit:
                break
        return results
