"""FastAPI dependency injection for the knowledge base services.

The lifespan stores a KnowledgeServices instance on app.state; endpoints
receive it (or one of its components) through these dependencies so tests can
swap in their own via app.state or dependency_overrides.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.knowledge.ingestion.pipeline import IngestionPipeline
from src.knowledge.rag.pipeline import RAGChatOrchestrator
from src.knowledge.rag.retriever import HybridRetriever
from src.knowledge.services import KnowledgeServices


def get_services(request: Request) -> KnowledgeServices:
    """Get the knowledge services created at startup."""
    services = getattr(request.app.state, "knowledge", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Knowledge services are not initialized",
        )
    return services


def get_pipeline(services: KnowledgeServices = Depends(get_services)) -> IngestionPipeline:
    return services.pipeline


def get_retriever(services: KnowledgeServices = Depends(get_services)) -> HybridRetriever:
    return services.retriever


def get_chat(services: KnowledgeServices = Depends(get_services)) -> RAGChatOrchestrator:
    return services.chat
