"""FastAPI application factory.

Creates the app with logging middleware, CORS, lifespan events that build
the knowledge base services, and the v1 API router.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.app.config import get_settings
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.knowledge.services import KnowledgeServices


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build knowledge services on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    services = await KnowledgeServices.create()
    app.state.knowledge = services
    log.info(
        "knowledge.services_initialized",
        keyword_index=services.keyword_index.enabled,
        embedding_backend=services.config.embedding_backend,
    )

    # Documents stuck in processing belong to a run that died with the process
    try:
        recovered = await services.pipeline.recover_interrupted()
        if recovered:
            log.warning("knowledge.recovered_interrupted", count=recovered)
    except Exception:
        log.warning("knowledge.recovery_failed", exc_info=True)

    # Warm the embedding backend without delaying startup
    warmup_task: asyncio.Task[None] | None = None
    if settings.WARMUP_EMBEDDINGS:
        warmup_task = asyncio.create_task(services.embedder.warmup())

    yield

    if warmup_task is not None and not warmup_task.done():
        warmup_task.cancel()
    await services.close()
    log.info("knowledge.services_closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Knowledge Base API",
        version="0.1.0",
        description="Local document ingestion, hybrid search and retrieval-augmented chat",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Include v1 API router (health, documents, search, chat)
    app.include_router(v1_router)

    return app


# Module-level app for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
