"""Async SQLAlchemy engine for the local metadata database.

Provides:
- Base: Declarative base for the documents and chat message tables
- create_engine_for(): engine for the configured URL (SQLite by default,
  parent directory created on demand)
- make_session_factory(): session generator factory in the session_factory
  callable shape the repositories expect
- init_db(): creates all tables
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.knowledge.config import KnowledgeBaseConfig

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


class Base(DeclarativeBase):
    """Base class for knowledge base ORM models."""


def create_engine_for(config: KnowledgeBaseConfig) -> AsyncEngine:
    """Create the async engine for the configured metadata database."""
    url = make_url(config.resolved_database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(url, echo=False)


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a callable that yields one AsyncSession per use."""

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _session


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables registered on Base."""
    # Register models on Base.metadata
    from src.knowledge.conversations import models as _conversation_models  # noqa: F401
    from src.knowledge.documents import models as _document_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
