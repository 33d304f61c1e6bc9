"""Knowledge Base module for local document ingestion, retrieval and chat.

Provides a Qdrant-backed vector index and an SQLite FTS5 keyword index over
ingested documents, hybrid search fusing both, and retrieval-augmented chat
streamed from a local Ollama model.
"""

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import (
    ChatMessage,
    ChatSource,
    DocumentRecord,
    DocumentStatus,
    KnowledgeChunk,
    RetrievalResult,
    SearchMode,
    SearchOptions,
    TokenEvent,
)
from src.knowledge.qdrant_client import QdrantVectorIndex

__all__ = [
    "ChatMessage",
    "ChatSource",
    "DocumentRecord",
    "DocumentStatus",
    "EmbeddingService",
    "KnowledgeBaseConfig",
    "KnowledgeChunk",
    "QdrantVectorIndex",
    "RetrievalResult",
    "SearchMode",
    "SearchOptions",
    "TokenEvent",
]
