"""Process-wide wiring of the knowledge base components.

KnowledgeServices.create() builds every long-lived object once: the metadata
engine, repositories, vector and keyword indexes, embedding service,
ingestion pipeline, retriever, chat client and chat orchestrator. The app
holds one instance for its lifetime and closes it on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.conversations.store import ConversationStore
from src.knowledge.database import create_engine_for, init_db, make_session_factory
from src.knowledge.documents.repository import DocumentRepository
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.ingestion.pipeline import IngestionPipeline
from src.knowledge.keyword_index import KeywordIndex
from src.knowledge.qdrant_client import QdrantVectorIndex
from src.knowledge.rag.llm import OllamaChatClient
from src.knowledge.rag.pipeline import RAGChatOrchestrator
from src.knowledge.rag.retriever import HybridRetriever

logger = logging.getLogger(__name__)


@dataclass
class KnowledgeServices:
    """Container for the knowledge base singletons."""

    config: KnowledgeBaseConfig
    engine: AsyncEngine
    documents: DocumentRepository
    conversations: ConversationStore
    vector_index: QdrantVectorIndex
    keyword_index: KeywordIndex
    embedder: EmbeddingService
    pipeline: IngestionPipeline
    retriever: HybridRetriever
    llm: OllamaChatClient
    chat: RAGChatOrchestrator

    @classmethod
    async def create(
        cls,
        config: KnowledgeBaseConfig | None = None,
        *,
        embedder: EmbeddingService | None = None,
        vector_index: QdrantVectorIndex | None = None,
        llm: OllamaChatClient | None = None,
    ) -> KnowledgeServices:
        """Build and initialize all components.

        Args:
            config: Configuration; loaded from the environment when omitted.
            embedder: Override the embedding service (tests).
            vector_index: Override the vector index (tests).
            llm: Override the chat client (tests).
        """
        config = config or KnowledgeBaseConfig()

        engine = create_engine_for(config)
        await init_db(engine)
        session_factory = make_session_factory(engine)

        documents = DocumentRepository(session_factory)
        conversations = ConversationStore(session_factory)
        keyword_index = KeywordIndex(engine)
        await keyword_index.initialize()

        vector_index = vector_index or QdrantVectorIndex(config)
        embedder = embedder or EmbeddingService(config)
        llm = llm or OllamaChatClient.from_config(config)

        pipeline = IngestionPipeline(
            config=config,
            documents=documents,
            vector_index=vector_index,
            embedder=embedder,
            keyword_index=keyword_index,
        )
        retriever = HybridRetriever(
            config=config,
            embedder=embedder,
            vector_index=vector_index,
            keyword_index=keyword_index,
            documents=documents,
        )
        chat = RAGChatOrchestrator(
            config=config,
            retriever=retriever,
            llm=llm,
            conversations=conversations,
        )

        logger.info(
            "Knowledge services ready (keyword index %s)",
            "enabled" if keyword_index.enabled else "disabled",
        )
        return cls(
            config=config,
            engine=engine,
            documents=documents,
            conversations=conversations,
            vector_index=vector_index,
            keyword_index=keyword_index,
            embedder=embedder,
            pipeline=pipeline,
            retriever=retriever,
            llm=llm,
            chat=chat,
        )

    async def close(self) -> None:
        await self.embedder.close()
        await self.llm.aclose()
        await self.vector_index.close()
        await self.engine.dispose()
