"""RAG chat orchestration.

A chat turn runs as a background task and feeds two outputs:

- sources: a one-shot list of cited documents, always published before the
  first token
- tokens: an ordered stream of TokenEvent, always terminated by exactly one
  event with done=True

Flow:
  history -> semantic retrieval -> relevance gate -> sources -> prompt
  -> streamed generation

When retrieval finds nothing, fails, or the best score does not exceed the
relevance threshold, the model is not called: sources are empty and a single
canned "no relevant content" token is streamed. Other failures, including
generation errors and a missing vector index, are rendered as an in-band
error token followed by done.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.conversations.store import ConversationStore
from src.knowledge.errors import ConfigurationError
from src.knowledge.models import (
    ChatMessage,
    ChatSource,
    ConversationMessage,
    RetrievalResult,
    SearchMode,
    SearchOptions,
    TokenEvent,
)
from src.knowledge.rag.llm import OllamaChatClient
from src.knowledge.rag.prompts import (
    NO_RELEVANT_CONTENT,
    UNKNOWN_FILE,
    build_prompt,
    format_error_token,
)
from src.knowledge.rag.retriever import HybridRetriever

logger = logging.getLogger(__name__)


def select_sources(results: list[RetrievalResult], max_sources: int = 3) -> list[ChatSource]:
    """Deduplicate retrieval results by document, keeping each document's best score.

    Returns:
        Up to max_sources sources ordered by descending score.
    """
    best: dict[str, ChatSource] = {}
    for result in results:
        current = best.get(result.document_id)
        if current is None or result.score > current.score:
            best[result.document_id] = ChatSource(
                document_id=result.document_id,
                name=result.name or UNKNOWN_FILE,
                score=result.score,
            )
    ranked = sorted(best.values(), key=lambda s: s.score, reverse=True)
    return ranked[:max_sources]


def clean_history(history: list[ChatMessage], query: str) -> list[ChatMessage]:
    """Drop empty messages and a trailing user message repeating the query."""
    cleaned = [m for m in history if m.content and m.content.strip()]
    if cleaned and cleaned[-1].role == "user" and cleaned[-1].content.strip() == query.strip():
        cleaned.pop()
    return cleaned


# ── Chat Turn ─────────────────────────────────────────────────────────────


class ChatTurn:
    """Handle on a running chat turn.

    Consume sources() and tokens() (or the merged events()) from the caller's
    task. tokens() supports a single consumer.
    """

    def __init__(self) -> None:
        loop = asyncio.get_running_loop()
        self._sources: asyncio.Future[list[ChatSource]] = loop.create_future()
        self._queue: asyncio.Queue[TokenEvent] = asyncio.Queue()
        self._answer: list[str] = []
        self._finished = False
        self._task: asyncio.Task[None] | None = None

    # Producer side

    def _publish_sources(self, sources: list[ChatSource]) -> None:
        if not self._sources.done():
            self._sources.set_result(sources)

    def _emit(self, token: str) -> None:
        if self._finished or not token:
            return
        self._answer.append(token)
        self._queue.put_nowait(TokenEvent(token=token))

    def _finish(self) -> None:
        self._publish_sources([])
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(TokenEvent(done=True))

    # Consumer side

    @property
    def answer(self) -> str:
        """Text streamed so far."""
        return "".join(self._answer)

    @property
    def sources_published(self) -> bool:
        return self._sources.done()

    async def sources(self) -> list[ChatSource]:
        """Wait for the turn's sources."""
        return await asyncio.shield(self._sources)

    async def tokens(self) -> AsyncIterator[TokenEvent]:
        """Yield token events until the done event (inclusive)."""
        while True:
            event = await self._queue.get()
            yield event
            if event.done:
                return

    async def events(self) -> AsyncIterator[list[ChatSource] | TokenEvent]:
        """Yield the sources list first, then every token event."""
        yield await self.sources()
        async for event in self.tokens():
            yield event

    async def wait(self) -> str:
        """Wait for the turn to finish and return the full answer text."""
        if self._task is not None:
            await self._task
        return self.answer

    def cancel(self) -> None:
        """Stop generation, e.g. when the client disconnected."""
        if self._task is not None and not self._task.done():
            self._task.cancel()


# ── Orchestrator ──────────────────────────────────────────────────────────


class RAGChatOrchestrator:
    """Answers questions from the knowledge base with a streamed model reply.

    Args:
        config: Knowledge base configuration (limits, threshold, history).
        retriever: Hybrid retriever used in semantic mode.
        llm: Streaming chat client.
        conversations: Session store; needed to load history by session id
            and to persist completed turns.
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        retriever: HybridRetriever,
        llm: OllamaChatClient,
        conversations: ConversationStore | None = None,
    ) -> None:
        self._config = config
        self._retriever = retriever
        self._llm = llm
        self._conversations = conversations

    def start_chat_turn(
        self,
        query: str,
        history: list[ChatMessage] | None = None,
        model: str | None = None,
        session_id: str | None = None,
        kb_id: str | None = None,
    ) -> ChatTurn:
        """Start answering a question; must be called from a running event loop.

        Args:
            query: The user's question.
            history: Prior messages. When None and session_id is given, the
                session's recent messages are loaded instead.
            model: Chat model; defaults to the configured chat model.
            session_id: Session whose history to use and to append to.
            kb_id: Restrict retrieval to one knowledge base.

        Returns:
            ChatTurn exposing the sources and token streams.
        """
        turn = ChatTurn()
        turn._task = asyncio.create_task(
            self._run(turn, query, history, model, session_id, kb_id)
        )
        return turn

    async def _run(
        self,
        turn: ChatTurn,
        query: str,
        history: list[ChatMessage] | None,
        model: str | None,
        session_id: str | None,
        kb_id: str | None,
    ) -> None:
        generated = False
        try:
            prior = await self._resolve_history(query, history, session_id)

            results = await self._retrieve(query, kb_id)

            top_score = max((r.score for r in results), default=0.0)
            if not results or top_score <= self._config.relevance_threshold:
                logger.info("No relevant context (hits=%d, top=%.3f)", len(results), top_score)
                turn._publish_sources([])
                turn._emit(NO_RELEVANT_CONTENT)
                return

            turn._publish_sources(select_sources(results, self._config.chat_max_sources))

            prompt = build_prompt(query, [r.text for r in results])
            messages = [*prior, ChatMessage(role="user", content=prompt)]
            async for token in self._llm.stream_chat(messages, model=model):
                turn._emit(token)
            generated = True
        except asyncio.CancelledError:
            logger.info("Chat turn cancelled")
            raise
        except Exception as exc:
            logger.error("Chat turn failed: %s", exc)
            turn._publish_sources([])
            turn._emit(format_error_token(str(exc) or exc.__class__.__name__))
        finally:
            turn._finish()

        if generated and session_id and self._conversations is not None:
            await self._persist_turn(session_id, query, turn.answer)

    async def _retrieve(self, query: str, kb_id: str | None) -> list[RetrievalResult]:
        """Semantic retrieval for a chat turn; failures other than configuration yield no context."""
        try:
            return await self._retriever.search(
                query,
                SearchOptions(
                    mode=SearchMode.SEMANTIC,
                    limit=self._config.chat_retrieval_limit,
                    kb_id=kb_id,
                ),
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.warning("Retrieval failed, answering without context: %s", exc)
            return []

    async def _resolve_history(
        self,
        query: str,
        history: list[ChatMessage] | None,
        session_id: str | None,
    ) -> list[ChatMessage]:
        if history is None and session_id and self._conversations is not None:
            stored = await self._conversations.recent_messages(
                session_id, self._config.session_history_limit
            )
            history = [ChatMessage(role=m.role, content=m.content) for m in stored]
        return clean_history(history or [], query)

    async def _persist_turn(self, session_id: str, query: str, answer: str) -> None:
        try:
            await self._conversations.add_message(
                ConversationMessage(session_id=session_id, role="user", content=query)
            )
            await self._conversations.add_message(
                ConversationMessage(session_id=session_id, role="assistant", content=answer)
            )
        except Exception:
            logger.warning("Could not store chat turn for session %s", session_id, exc_info=True)
