"""Conversation history storage in the metadata database.

Stores chat messages per session and returns a session's most recent
messages in chronological order, which the chat orchestrator uses as history
when a caller supplies a session id instead of an explicit history.
"""

from __future__ import annotations

import logging
from datetime import timezone

from sqlalchemy import delete, select

from src.knowledge.conversations.models import ConversationMessageModel
from src.knowledge.database import SessionFactory
from src.knowledge.models import ConversationMessage

logger = logging.getLogger(__name__)


def _model_to_message(model: ConversationMessageModel) -> ConversationMessage:
    created_at = model.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return ConversationMessage(
        id=model.id,
        session_id=model.session_id,
        role=model.role,
        content=model.content,
        created_at=created_at,
    )


class ConversationStore:
    """Session-scoped chat message storage.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def add_message(self, message: ConversationMessage) -> str:
        """Persist a single message.

        Returns:
            The message ID (same as message.id).
        """
        async for session in self._session_factory():
            session.add(
                ConversationMessageModel(
                    id=message.id,
                    session_id=message.session_id,
                    role=message.role,
                    content=message.content,
                    created_at=message.created_at,
                )
            )
            await session.commit()
        logger.debug("Stored message %s for session %s", message.id, message.session_id)
        return message.id

    async def recent_messages(self, session_id: str, limit: int = 50) -> list[ConversationMessage]:
        """Return up to limit most recent messages of a session, oldest first."""
        if limit <= 0:
            return []
        stmt = (
            select(ConversationMessageModel)
            .where(ConversationMessageModel.session_id == session_id)
            .order_by(ConversationMessageModel.created_at.desc())
            .limit(limit)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            models = list(result.scalars().all())
            models.reverse()
            return [_model_to_message(m) for m in models]
        return []

    async def delete_session(self, session_id: str) -> int:
        """Delete every message of a session.

        Returns:
            Number of messages deleted.
        """
        async for session in self._session_factory():
            result = await session.execute(
                delete(ConversationMessageModel).where(
                    ConversationMessageModel.session_id == session_id
                )
            )
            await session.commit()
            return result.rowcount
        return 0
