"""Tests for ConversationStore and DocumentRepository on SQLite.

Each test gets a fresh database under tmp_path. Tests cover:
- Message persistence and chronological retrieval
- History limits and session isolation
- Session deletion
- Document record CRUD, filtering, paging and limit clamping
- Timezone handling of stored timestamps
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.knowledge.conversations.store import ConversationStore
from src.knowledge.database import create_engine_for, init_db, make_session_factory
from src.knowledge.documents.repository import MAX_LIST_LIMIT, DocumentRepository, clamp_limit
from src.knowledge.models import (
    ConversationMessage,
    DocumentRecord,
    DocumentStatus,
    DocumentType,
)


# ── Helpers ────────────────────────────────────────────────────────────────


def _make_message(session_id: str, content: str, minutes: int, role: str = "user") -> ConversationMessage:
    base = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    return ConversationMessage(
        session_id=session_id,
        role=role,
        content=content,
        created_at=base + timedelta(minutes=minutes),
    )


def _make_record(name: str, minutes: int = 0, **kwargs) -> DocumentRecord:
    created = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return DocumentRecord(
        name=name,
        path=f"/docs/{name}",
        type=DocumentType.TXT,
        created_at=created,
        updated_at=created,
        **kwargs,
    )


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture
async def session_factory(config):
    engine = create_engine_for(config)
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> ConversationStore:
    return ConversationStore(session_factory)


@pytest.fixture
def repository(session_factory) -> DocumentRepository:
    return DocumentRepository(session_factory)


# ── Tests: Conversation Store ──────────────────────────────────────────────


async def test_messages_come_back_oldest_first(store: ConversationStore):
    await store.add_message(_make_message("s-1", "second", minutes=2, role="assistant"))
    await store.add_message(_make_message("s-1", "first", minutes=1))
    await store.add_message(_make_message("s-1", "third", minutes=3))

    messages = await store.recent_messages("s-1")

    assert [m.content for m in messages] == ["first", "second", "third"]
    assert messages[0].created_at.tzinfo is not None


async def test_recent_messages_keeps_latest_within_limit(store: ConversationStore):
    for i in range(5):
        await store.add_message(_make_message("s-1", f"m{i}", minutes=i))

    messages = await store.recent_messages("s-1", limit=2)

    assert [m.content for m in messages] == ["m3", "m4"]
    assert await store.recent_messages("s-1", limit=0) == []


async def test_sessions_are_isolated(store: ConversationStore):
    await store.add_message(_make_message("s-1", "mine", minutes=0))
    await store.add_message(_make_message("s-2", "theirs", minutes=0))

    assert [m.content for m in await store.recent_messages("s-1")] == ["mine"]


async def test_delete_session(store: ConversationStore):
    await store.add_message(_make_message("s-1", "a", minutes=0))
    await store.add_message(_make_message("s-1", "b", minutes=1))

    assert await store.delete_session("s-1") == 2
    assert await store.recent_messages("s-1") == []
    assert await store.delete_session("s-1") == 0


# ── Tests: Document Repository ─────────────────────────────────────────────


async def test_insert_and_get_round_trip(repository: DocumentRepository):
    record = _make_record("a.txt", kb_id="kb-1", tags=["x", "y"], size=42)

    await repository.insert(record)
    stored = await repository.get(record.id)

    assert stored.name == "a.txt"
    assert stored.kb_id == "kb-1"
    assert stored.tags == ["x", "y"]
    assert stored.size == 42
    assert stored.status == DocumentStatus.PENDING
    assert stored.created_at == record.created_at


async def test_get_missing_returns_none(repository: DocumentRepository):
    assert await repository.get("missing") is None


async def test_get_many_skips_missing(repository: DocumentRepository):
    a = await repository.insert(_make_record("a.txt"))
    b = await repository.insert(_make_record("b.txt"))

    found = await repository.get_many([a.id, "missing", b.id, a.id])

    assert set(found) == {a.id, b.id}
    assert await repository.get_many([]) == {}


async def test_list_orders_newest_first_and_filters(repository: DocumentRepository):
    old = await repository.insert(_make_record("old.txt", minutes=0, kb_id="kb-1"))
    new = await repository.insert(_make_record("new.txt", minutes=10, kb_id="kb-1"))
    other = await repository.insert(
        _make_record("other.txt", minutes=5, kb_id="kb-2", status=DocumentStatus.INDEXED)
    )

    assert [r.id for r in await repository.list_documents()] == [new.id, other.id, old.id]
    assert [r.id for r in await repository.list_documents(kb_id="kb-1")] == [new.id, old.id]
    assert [r.id for r in await repository.list_documents(status=DocumentStatus.INDEXED)] == [other.id]
    assert [r.id for r in await repository.list_documents(limit=1, offset=1)] == [other.id]


def test_clamp_limit():
    assert clamp_limit(None) == 50
    assert clamp_limit(0) == 1
    assert clamp_limit(-5) == 1
    assert clamp_limit(10_000) == MAX_LIST_LIMIT


async def test_update_status_sets_and_clears_error(repository: DocumentRepository):
    record = await repository.insert(_make_record("a.txt"))

    assert await repository.update_status(record.id, DocumentStatus.ERROR, error_message="bad pdf")
    assert (await repository.get(record.id)).error_message == "bad pdf"

    assert await repository.update_status(record.id, DocumentStatus.INDEXED)
    stored = await repository.get(record.id)
    assert stored.status == DocumentStatus.INDEXED
    assert stored.error_message is None

    assert await repository.update_status("missing", DocumentStatus.INDEXED) is False


async def test_update_tags_and_delete(repository: DocumentRepository):
    record = await repository.insert(_make_record("a.txt"))

    assert await repository.update_tags(record.id, ["new"])
    assert (await repository.get(record.id)).tags == ["new"]

    assert await repository.delete(record.id) is True
    assert await repository.delete(record.id) is False
