"""Pydantic schemas for the knowledge base API endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from src.knowledge.models import (
    ChatMessage,
    DocumentRecord,
    DocumentType,
    RetrievalResult,
    SearchMode,
    SearchOptions,
)


class IngestRequest(BaseModel):
    """Request schema for ingesting a file already on disk."""

    path: str = Field(..., min_length=1, description="Path of the file to ingest")
    kb_id: str | None = Field(default=None, description="Knowledge base to file the document under")
    tags: list[str] = Field(default_factory=list, description="Tags for the document")


class DocumentListResponse(BaseModel):
    documents: list[DocumentRecord]
    count: int


class SearchRequest(BaseModel):
    """Request schema for knowledge base search."""

    query: str = Field(..., min_length=1, description="Search query")
    mode: SearchMode = Field(default=SearchMode.HYBRID, description="semantic, keyword or hybrid")
    limit: int = Field(default=10, ge=1, le=100, description="Maximum results")
    kb_id: str | None = None
    types: list[DocumentType] | None = None
    tags: list[str] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def to_options(self) -> SearchOptions:
        return SearchOptions(**self.model_dump(exclude={"query"}))


class SearchResponse(BaseModel):
    results: list[RetrievalResult]
    count: int


class ChatRequest(BaseModel):
    """Request schema for a streamed chat turn."""

    query: str = Field(..., min_length=1, description="User question")
    history: list[ChatMessage] | None = Field(
        default=None, description="Prior messages; loaded from the session when omitted"
    )
    model: str | None = Field(default=None, description="Ollama chat model")
    session_id: str | None = None
    kb_id: str | None = None
