"""Document-level full-text index on SQLite FTS5.

One row per document holds its name, full extracted content and tags in an
FTS5 virtual table living in the metadata database. Queries are tokenised
into quoted terms joined with OR, so user input can never inject FTS query
syntax.

FTS5's bm25() rank is negative, more negative meaning more relevant. It is
mapped to a positive lower-is-better cost c = 1 / (1 + |bm25|) and normalised
per batch as 1 - c / max(c), giving scores in [0, 1) where the best hit of
the batch scores highest.

If the database is not SQLite or FTS5 is not compiled in, the index disables
itself: writes are no-ops and queries return no hits.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.knowledge.errors import IndexErrorKind, KeywordIndexError

logger = logging.getLogger(__name__)

FTS_TABLE = "documents_fts"
SNIPPET_TOKENS = 16

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class KeywordHit(BaseModel):
    """A document matched by a keyword query.

    Attributes:
        document_id: Matched document.
        snippet: Excerpt around the matched terms.
        rank: Raw bm25() value (negative, lower is more relevant).
        score: Batch-normalised relevance in [0, 1].
    """

    document_id: str
    snippet: str
    rank: float
    score: float


def build_match_query(query: str) -> str:
    """Turn free text into an FTS5 MATCH expression of OR-ed quoted terms."""
    terms = _TOKEN_RE.findall(query.lower())
    unique = list(dict.fromkeys(terms))
    return " OR ".join(f'"{term}"' for term in unique)


def normalize_ranks(ranks: list[float]) -> list[float]:
    """Normalise bm25 ranks of one batch into [0, 1], higher is better."""
    if not ranks:
        return []
    costs = [1.0 / (1.0 + abs(r)) for r in ranks]
    max_cost = max(costs)
    if max_cost <= 0:
        return [0.0 for _ in costs]
    return [1.0 - c / max_cost for c in costs]


class KeywordIndex:
    """Full-text index over document name, content and tags.

    Args:
        engine: Async engine of the metadata database.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._enabled = False

    @property
    def enabled(self) -> bool:
        """Whether FTS5 is available and the table exists."""
        return self._enabled

    async def initialize(self) -> bool:
        """Create the FTS5 table if possible.

        Returns:
            True if the index is enabled.
        """
        if self._engine.dialect.name != "sqlite":
            logger.warning("Keyword index disabled: %s has no FTS5", self._engine.dialect.name)
            self._enabled = False
            return False

        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        f"CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5("
                        "document_id UNINDEXED, kb_id UNINDEXED, name, content, tags)"
                    )
                )
        except (OperationalError, DBAPIError) as exc:
            logger.warning("Keyword index disabled, FTS5 unavailable: %s", exc)
            self._enabled = False
            return False

        self._enabled = True
        logger.info("Keyword index ready (%s)", FTS_TABLE)
        return True

    async def upsert(
        self,
        document_id: str,
        name: str,
        content: str,
        tags: list[str] | None = None,
        kb_id: str | None = None,
    ) -> None:
        """Replace the indexed row of a document."""
        if not self._enabled:
            return
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(f"DELETE FROM {FTS_TABLE} WHERE document_id = :document_id"),
                    {"document_id": document_id},
                )
                await conn.execute(
                    text(
                        f"INSERT INTO {FTS_TABLE} (document_id, kb_id, name, content, tags) "
                        "VALUES (:document_id, :kb_id, :name, :content, :tags)"
                    ),
                    {
                        "document_id": document_id,
                        "kb_id": kb_id or "",
                        "name": name,
                        "content": content,
                        "tags": " ".join(tags or []),
                    },
                )
        except DBAPIError as exc:
            raise KeywordIndexError(f"Keyword upsert failed: {exc}", IndexErrorKind.OTHER) from exc

    async def delete(self, document_id: str) -> None:
        if not self._enabled:
            return
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(f"DELETE FROM {FTS_TABLE} WHERE document_id = :document_id"),
                    {"document_id": document_id},
                )
        except DBAPIError as exc:
            raise KeywordIndexError(f"Keyword delete failed: {exc}", IndexErrorKind.OTHER) from exc

    async def query(self, query: str, k: int, kb_id: str | None = None) -> list[KeywordHit]:
        """Rank documents against free-text query.

        Args:
            query: User query text.
            k: Maximum hits.
            kb_id: Restrict hits to one knowledge base.

        Returns:
            Hits ordered by relevance, best first. Empty when disabled or
            when the query has no searchable terms.
        """
        if not self._enabled or k <= 0:
            return []
        match = build_match_query(query)
        if not match:
            return []

        sql = (
            f"SELECT document_id, "
            f"snippet({FTS_TABLE}, 3, '<mark>', '</mark>', '...', {SNIPPET_TOKENS}) AS snippet, "
            f"bm25({FTS_TABLE}) AS bm25_rank "
            f"FROM {FTS_TABLE} WHERE {FTS_TABLE} MATCH :match"
        )
        params: dict[str, object] = {"match": match, "k": k}
        if kb_id:
            sql += " AND kb_id = :kb_id"
            params["kb_id"] = kb_id
        sql += " ORDER BY bm25_rank LIMIT :k"

        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(text(sql), params)
                rows = result.fetchall()
        except DBAPIError as exc:
            logger.warning("Keyword query failed, returning no hits: %s", exc)
            return []

        scores = normalize_ranks([float(row.bm25_rank) for row in rows])
        return [
            KeywordHit(
                document_id=row.document_id,
                snippet=row.snippet or "",
                rank=float(row.bm25_rank),
                score=score,
            )
            for row, score in zip(rows, scores, strict=True)
        ]
