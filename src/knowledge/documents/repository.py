"""Document metadata repository -- async CRUD for the documents table.

Uses the session_factory callable pattern: each method opens its own session,
so every statement is individually atomic. Rows are converted to
DocumentRecord models at the boundary; nothing outside this module touches
ORM objects.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select, update

from src.knowledge.database import SessionFactory
from src.knowledge.documents.models import DocumentModel
from src.knowledge.models import DocumentRecord, DocumentStatus, DocumentType

MAX_LIST_LIMIT = 500
DEFAULT_LIST_LIMIT = 50


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored values are UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _model_to_record(model: DocumentModel) -> DocumentRecord:
    """Convert DocumentModel to DocumentRecord."""
    created_at = _aware(model.created_at) or datetime.now(timezone.utc)
    return DocumentRecord(
        id=model.id,
        name=model.name,
        path=model.path,
        type=DocumentType(model.type),
        size=model.size or 0,
        status=DocumentStatus(model.status),
        kb_id=model.kb_id,
        tags=list(model.tags or []),
        error_message=model.error_message,
        created_at=created_at,
        updated_at=_aware(model.updated_at) or created_at,
    )


def clamp_limit(limit: int | None) -> int:
    """Clamp a list limit into [1, MAX_LIST_LIMIT], defaulting when unset."""
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(int(limit), MAX_LIST_LIMIT))


class DocumentRepository:
    """Async CRUD operations for document records.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def insert(self, record: DocumentRecord) -> DocumentRecord:
        """Persist a new document record.

        Args:
            record: Record to insert; its id is kept.

        Returns:
            The stored record.
        """
        async for session in self._session_factory():
            model = DocumentModel(
                id=record.id,
                name=record.name,
                path=record.path,
                type=record.type.value,
                size=record.size,
                status=record.status.value,
                kb_id=record.kb_id,
                tags=list(record.tags),
                error_message=record.error_message,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_record(model)

    async def get(self, document_id: str) -> DocumentRecord | None:
        """Get a document by id, or None if it does not exist."""
        async for session in self._session_factory():
            model = await session.get(DocumentModel, document_id)
            if model is None:
                return None
            return _model_to_record(model)

    async def get_many(self, document_ids: list[str]) -> dict[str, DocumentRecord]:
        """Get several documents at once, keyed by id. Missing ids are absent."""
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return {}
        async for session in self._session_factory():
            result = await session.execute(
                select(DocumentModel).where(DocumentModel.id.in_(ids))
            )
            return {m.id: _model_to_record(m) for m in result.scalars().all()}
        return {}

    async def list_documents(
        self,
        kb_id: str | None = None,
        status: DocumentStatus | None = None,
        limit: int | None = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> list[DocumentRecord]:
        """List documents, newest first.

        Args:
            kb_id: Only documents of this knowledge base.
            status: Only documents in this status.
            limit: Page size, clamped to [1, 500].
            offset: Rows to skip.
        """
        stmt = select(DocumentModel)
        if kb_id is not None:
            stmt = stmt.where(DocumentModel.kb_id == kb_id)
        if status is not None:
            stmt = stmt.where(DocumentModel.status == status.value)
        stmt = (
            stmt.order_by(DocumentModel.created_at.desc(), DocumentModel.id)
            .offset(max(0, offset))
            .limit(clamp_limit(limit))
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]
        return []

    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: str | None = None,
    ) -> bool:
        """Set a document's status. Clears the error message unless one is given.

        Returns:
            True if a row was updated.
        """
        stmt = (
            update(DocumentModel)
            .where(DocumentModel.id == document_id)
            .values(
                status=status.value,
                error_message=error_message,
                updated_at=datetime.now(timezone.utc),
            )
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0
        return False

    async def update_tags(self, document_id: str, tags: list[str]) -> bool:
        stmt = (
            update(DocumentModel)
            .where(DocumentModel.id == document_id)
            .values(tags=list(tags), updated_at=datetime.now(timezone.utc))
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0
        return False

    async def delete(self, document_id: str) -> bool:
        """Delete a document row.

        Returns:
            True if a row was deleted, False if it did not exist.
        """
        async for session in self._session_factory():
            result = await session.execute(
                delete(DocumentModel).where(DocumentModel.id == document_id)
            )
            await session.commit()
            return result.rowcount > 0
        return False
