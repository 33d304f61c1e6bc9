"""Chat session message storage.

Persists the messages of chat sessions so a turn can be answered with the
session's recent history as context.
"""

from src.knowledge.conversations.store import ConversationStore

__all__ = ["ConversationStore"]
