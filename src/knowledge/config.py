"""Knowledge Base configuration via Pydantic BaseSettings.

All settings load from environment variables with the KNOWLEDGE_ prefix.
For example, KNOWLEDGE_OLLAMA_BASE_URL sets ollama_base_url.

Paths that are not set explicitly are derived from data_dir so a single
variable relocates the whole local store (metadata database, vector index,
imported files).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EmbeddingBackendName = Literal["auto", "local", "remote"]


class KnowledgeBaseConfig(BaseSettings):
    """Configuration for ingestion, retrieval and chat.

    Attributes:
        data_dir: Root directory for all local state.
        database_url: SQLAlchemy async URL of the metadata database. Derived
            from data_dir when unset.
        qdrant_path: Local filesystem path for Qdrant storage.
        qdrant_url: Remote Qdrant server URL. If set, takes precedence over
            qdrant_path.
        qdrant_api_key: API key for remote Qdrant authentication.
        collection_name: Name of the chunk collection in Qdrant.
        imports_dir: Where dropped file bytes are saved before ingestion.
        embedding_backend: "local" (in-process fastembed), "remote" (Ollama)
            or "auto" (local first, remote on failure).
        ollama_base_url: Base URL of the Ollama server.
        embedding_model: Remote embedding model name.
        local_embedding_model: fastembed model name for the local backend.
        chat_model: Default Ollama chat model.
        chunk_size: Characters per chunk.
        chunk_overlap: Characters shared between consecutive chunks.
        embedding_batch_size: Chunks buffered before a vector index flush.
        semantic_weight: Weight of the semantic leg in hybrid fusion.
        keyword_weight: Weight of the keyword leg in hybrid fusion.
        default_search_limit: Result count when the caller does not give one.
        relevance_threshold: Max semantic score at or below which chat
            answers "no relevant content" without calling the model.
        chat_retrieval_limit: Chunks retrieved per chat turn.
        chat_max_sources: Distinct documents cited per chat turn.
        session_history_limit: Messages loaded from a stored session.
        probe_timeout: Seconds allowed for connectivity probes.
        progress_queue_size: Buffered progress events per ingestion stream.
    """

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    data_dir: str = "./knowledge_data"
    database_url: str | None = None
    qdrant_path: str | None = None
    qdrant_url: str | None = None
    qdrant_api_key: str | None = None
    collection_name: str = "knowledge_chunks"
    imports_dir: str | None = None

    # Embedding
    embedding_backend: EmbeddingBackendName = "auto"
    ollama_base_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text:latest"
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Chat
    chat_model: str = "llama3"

    # Chunking
    chunk_size: int = 500
    chunk_overlap: int = 50
    embedding_batch_size: int = 32

    # Search
    semantic_weight: float = 0.6
    keyword_weight: float = 0.4
    default_search_limit: int = 10
    relevance_threshold: float = 0.5
    chat_retrieval_limit: int = 5
    chat_max_sources: int = 3
    session_history_limit: int = 50

    # Runtime
    probe_timeout: float = 3.0
    progress_queue_size: int = 100

    @model_validator(mode="after")
    def _check_consistency(self) -> KnowledgeBaseConfig:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        if self.embedding_batch_size <= 0:
            raise ValueError("embedding_batch_size must be positive")
        for name in ("semantic_weight", "keyword_weight", "relevance_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        return self

    # ── Derived paths ──────────────────────────────────────────────────────

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{Path(self.data_dir) / 'knowledge.db'}"

    @property
    def resolved_qdrant_path(self) -> str:
        return self.qdrant_path or str(Path(self.data_dir) / "qdrant")

    @property
    def resolved_imports_dir(self) -> Path:
        return Path(self.imports_dir) if self.imports_dir else Path(self.data_dir) / "imports"
