"""Pydantic models for the Knowledge Base domain.

Defines the core types shared by ingestion, storage, retrieval and chat:
document records and their lifecycle status, chunks, retrieval results with
provenance, search options, chat messages and the events streamed back to
callers (ingestion progress, chat tokens, sources).

Document lifecycle:
- pending: record created, nothing processed yet
- processing: extraction / embedding / indexing in progress
- indexed: all chunks and the keyword entry are written
- error: the last attempt failed; no chunks from it survive
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Documents ───────────────────────────────────────────────────────────────


class DocumentType(str, Enum):
    """Supported source document formats."""

    PDF = "pdf"
    DOCX = "docx"
    MD = "md"
    TXT = "txt"


class DocumentStatus(str, Enum):
    """Lifecycle status of an ingested document."""

    PENDING = "pending"
    PROCESSING = "processing"
    INDEXED = "indexed"
    ERROR = "error"


class DocumentRecord(BaseModel):
    """Metadata row describing one ingested file.

    Attributes:
        id: Unique identifier (UUID4), shared by all the document's chunks.
        name: Display name (file name).
        path: Location of the source file on disk.
        type: Detected document format.
        size: File size in bytes.
        status: Current lifecycle status.
        kb_id: Optional knowledge base the document belongs to.
        tags: Free-form labels, merged with markdown front-matter tags.
        error_message: Reason of the last failure, if any.
        created_at: When the record was created.
        updated_at: When the record was last modified.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    path: str
    type: DocumentType
    size: int = 0
    status: DocumentStatus = DocumentStatus.PENDING
    kb_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Knowledge Chunk ─────────────────────────────────────────────────────────


class KnowledgeChunk(BaseModel):
    """A contiguous span of a document's text, the unit of semantic retrieval.

    Chunks are immutable once written; re-ingesting a document replaces its
    whole chunk set.

    Attributes:
        id: Unique identifier (UUID4).
        document_id: Owning document.
        kb_id: Knowledge base of the owning document, copied for filtering.
        content: The chunk text.
        chunk_index: Position of the chunk within the document.
        embedding: Dense vector, filled in by the ingestion pipeline.
        created_at: When this chunk was produced.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    kb_id: str | None = None
    content: str
    chunk_index: int = 0
    embedding: list[float] | None = None
    created_at: datetime = Field(default_factory=_utcnow)


# ── Retrieval ───────────────────────────────────────────────────────────────


class SearchMode(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class Provenance(str, Enum):
    """Which retrieval leg(s) produced a result."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class SearchOptions(BaseModel):
    """Parameters of a retrieval request.

    Attributes:
        mode: Retrieval strategy.
        limit: Maximum number of results returned.
        kb_id: Restrict results to one knowledge base.
        types: Restrict results to these document types.
        tags: Keep results carrying at least one of these tags.
        date_from: Inclusive lower bound on document creation time.
        date_to: Inclusive upper bound on document creation time.
    """

    mode: SearchMode = SearchMode.HYBRID
    limit: int = Field(default=10, ge=1, le=500)
    kb_id: str | None = None
    types: list[DocumentType] | None = None
    tags: list[str] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


class RetrievalResult(BaseModel):
    """One search hit joined with its document's metadata.

    Attributes:
        document_id: Document the hit belongs to.
        text: Chunk text (semantic) or highlighted snippet (keyword).
        score: Relevance in [0, 1] for single-leg results; weighted sum for
            hybrid results.
        provenance: Leg(s) that produced this result.
        chunk_id: Chunk identifier for semantic hits.
        name: Document display name.
        type: Document format.
        tags: Document tags.
        kb_id: Document knowledge base.
        created_at: Document creation time.
    """

    document_id: str
    text: str
    score: float
    provenance: Provenance
    chunk_id: str | None = None
    name: str = ""
    type: DocumentType | None = None
    tags: list[str] = Field(default_factory=list)
    kb_id: str | None = None
    created_at: datetime | None = None


# ── Chat ────────────────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    """A message in a chat history, as sent to the model."""

    role: Literal["system", "user", "assistant"]
    content: str


class ConversationMessage(BaseModel):
    """A chat message persisted in a session.

    Attributes:
        id: Unique message identifier.
        session_id: Chat session the message belongs to.
        role: Speaker role.
        content: Message text.
        created_at: When the message was stored.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    role: Literal["system", "user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=_utcnow)


class ChatSource(BaseModel):
    """A document cited as context for a chat answer."""

    document_id: str
    name: str
    score: float


class TokenEvent(BaseModel):
    """One increment of a streamed answer.

    The final event of every stream has done=True and an empty token.
    """

    token: str = ""
    done: bool = False


# ── Ingestion ───────────────────────────────────────────────────────────────


class IngestionStage(str, Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    DONE = "done"
    ERROR = "error"


class IngestionProgress(BaseModel):
    """Progress event emitted during ingestion.

    Attributes:
        stage: Pipeline stage.
        percent: Overall completion, monotonic within one run (0-100).
        current: Items processed in the current stage (e.g. chunks embedded).
        total: Items to process in the current stage.
        message: Human-readable status line.
        document_id: Document being processed, once a record exists.
    """

    stage: IngestionStage
    percent: int = Field(ge=0, le=100)
    current: int | None = None
    total: int | None = None
    message: str = ""
    document_id: str | None = None


class IngestionResult(BaseModel):
    """Outcome of a single document ingestion.

    Attributes:
        success: Whether the document ended in status indexed.
        document_id: Document record identifier, if one was created.
        chunk_count: Number of chunks written to the vector index.
        message: Summary or failure reason.
    """

    success: bool
    document_id: str | None = None
    chunk_count: int = 0
    message: str = ""


class DeleteResult(BaseModel):
    """Outcome of a document deletion."""

    success: bool
    deleted: bool = False
    message: str = ""
