"""Tests for the document ingestion pipeline.

Runs the full pipeline against SQLite and local Qdrant under tmp_path with
the fake bag-of-words embedding backend: status transitions, chunk counts,
failure cleanup, re-indexing, deletion, recovery, progress reporting and
dropped-file handling.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

from src.knowledge.embeddings import EmbeddingService
from src.knowledge.ingestion.pipeline import (
    INTERRUPTED_MESSAGE,
    IngestionPipeline,
    ProgressChannel,
    sanitize_file_name,
)
from src.knowledge.models import (
    DocumentRecord,
    DocumentStatus,
    DocumentType,
    IngestionProgress,
    IngestionStage,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

WORDS = "lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "


def _body(length: int = 1200) -> str:
    """Text of exactly length characters without sentence boundaries."""
    return (WORDS * (length // len(WORDS) + 1))[:length]


# ── Tests: Single Document ───────────────────────────────────────────────────


async def test_ingest_text_file_end_to_end(services, write_file):
    path = write_file("notes.txt", _body(1200))

    result = await services.pipeline.ingest(path, kb_id="kb-1", tags=["draft"])

    assert result.success is True
    assert result.chunk_count == 3
    record = await services.documents.get(result.document_id)
    assert record.status == DocumentStatus.INDEXED
    assert record.type == DocumentType.TXT
    assert record.name == "notes.txt"
    assert record.size == 1200
    assert record.kb_id == "kb-1"
    assert record.tags == ["draft"]
    assert record.error_message is None
    assert await services.vector_index.count_for_document(record.id) == 3

    keyword_hits = await services.keyword_index.query("tempor", k=5)
    assert [h.document_id for h in keyword_hits] == [record.id]


async def test_frontmatter_tags_are_merged(services, write_file):
    path = write_file("plan.md", "---\ntags: [roadmap, q3]\n---\n# Plan\nShip the importer.\n")

    result = await services.pipeline.ingest(path, tags=["team", "roadmap"])

    record = await services.documents.get(result.document_id)
    assert record.tags == ["team", "roadmap", "q3"]


async def test_unsupported_file_creates_no_record(services, write_file):
    path = write_file("tool.exe", "binary")

    result = await services.pipeline.ingest(path)

    assert result.success is False
    assert result.document_id is None
    assert "Unsupported file type" in result.message
    assert await services.documents.list_documents() == []


async def test_missing_file_creates_no_record(services, tmp_path):
    result = await services.pipeline.ingest(tmp_path / "gone.md")

    assert result.success is False
    assert result.document_id is None
    assert await services.documents.list_documents() == []


async def test_metadata_store_failure_is_reported_not_raised(services, write_file):
    services.documents.insert = AsyncMock(side_effect=RuntimeError("database is locked"))
    events: list[IngestionProgress] = []

    result = await services.pipeline.ingest(write_file("notes.txt", _body(600)), on_progress=events.append)

    assert result.success is False
    assert result.document_id is None
    assert "database is locked" in result.message
    assert [e.stage for e in events] == [IngestionStage.ERROR]
    assert await services.keyword_index.query("tempor", k=5) == []


async def test_empty_document_is_marked_error(services, write_file):
    path = write_file("blank.txt", "   \n\n  ")

    result = await services.pipeline.ingest(path)

    assert result.success is False
    record = await services.documents.get(result.document_id)
    assert record.status == DocumentStatus.ERROR
    assert "No text content" in record.error_message
    assert await services.vector_index.count_for_document(record.id) == 0


async def test_embedding_failure_leaves_no_partial_chunks(services, config, write_file, backend_factory):
    failing = backend_factory(fail_after=1)
    pipeline = IngestionPipeline(
        config=config.model_copy(update={"embedding_batch_size": 1}),
        documents=services.documents,
        vector_index=services.vector_index,
        embedder=EmbeddingService(config, local_factory=lambda cfg: failing),
        keyword_index=services.keyword_index,
    )
    path = write_file("long.txt", _body(1200))

    result = await pipeline.ingest(path)

    assert result.success is False
    assert "embedding server went away" in result.message
    # The first chunk was flushed before the failure and must be gone
    assert await services.vector_index.exists() is True
    assert await services.vector_index.count_for_document(result.document_id) == 0
    record = await services.documents.get(result.document_id)
    assert record.status == DocumentStatus.ERROR
    assert await services.keyword_index.query("tempor", k=5) == []


# ── Tests: Re-index and Delete ───────────────────────────────────────────────


async def test_reindex_keeps_a_single_chunk_set(services, write_file):
    path = write_file("notes.txt", _body(1200))
    first = await services.pipeline.ingest(path)

    second = await services.pipeline.reindex(first.document_id)

    assert second.success is True
    assert second.document_id == first.document_id
    assert await services.vector_index.count_for_document(first.document_id) == 3
    assert len(await services.keyword_index.query("tempor", k=5)) == 1


async def test_reindex_picks_up_changed_content(services, write_file):
    path = write_file("notes.txt", _body(1200))
    first = await services.pipeline.ingest(path)
    Path(path).write_text("A single short paragraph now.", encoding="utf-8")

    result = await services.pipeline.reindex(first.document_id)

    assert result.chunk_count == 1
    assert await services.vector_index.count_for_document(first.document_id) == 1


async def test_reindex_unknown_document(services):
    result = await services.pipeline.reindex("no-such-id")

    assert result.success is False
    assert result.message == "Document not found"


async def test_delete_document_twice(services, write_file):
    result = await services.pipeline.ingest(write_file("notes.txt", _body(600)))
    document_id = result.document_id

    first = await services.pipeline.delete_document(document_id)
    second = await services.pipeline.delete_document(document_id)

    assert first.success is True and first.deleted is True
    assert second.success is True and second.deleted is False
    assert await services.documents.get(document_id) is None
    assert await services.vector_index.count_for_document(document_id) == 0
    assert await services.keyword_index.query("tempor", k=5) == []


async def test_recover_interrupted_marks_processing_as_error(services):
    stuck = await services.documents.insert(
        DocumentRecord(
            name="half.txt",
            path="/tmp/half.txt",
            type=DocumentType.TXT,
            status=DocumentStatus.PROCESSING,
        )
    )
    done = await services.documents.insert(
        DocumentRecord(
            name="done.txt",
            path="/tmp/done.txt",
            type=DocumentType.TXT,
            status=DocumentStatus.INDEXED,
        )
    )

    assert await services.pipeline.recover_interrupted() == 1

    assert (await services.documents.get(stuck.id)).status == DocumentStatus.ERROR
    assert (await services.documents.get(stuck.id)).error_message == INTERRUPTED_MESSAGE
    assert (await services.documents.get(done.id)).status == DocumentStatus.INDEXED
    assert await services.pipeline.recover_interrupted() == 0


async def test_recover_interrupted_reads_every_page(services, monkeypatch):
    monkeypatch.setattr("src.knowledge.ingestion.pipeline.MAX_LIST_LIMIT", 2)
    for i in range(5):
        await services.documents.insert(
            DocumentRecord(
                name=f"half-{i}.txt",
                path=f"/tmp/half-{i}.txt",
                type=DocumentType.TXT,
                status=DocumentStatus.PROCESSING,
            )
        )

    assert await services.pipeline.recover_interrupted() == 5

    assert await services.documents.list_documents(status=DocumentStatus.PROCESSING) == []
    assert len(await services.documents.list_documents(status=DocumentStatus.ERROR)) == 5


# ── Tests: Progress ──────────────────────────────────────────────────────────


async def test_progress_events_are_monotonic(services, write_file):
    events: list[IngestionProgress] = []

    result = await services.pipeline.ingest(write_file("notes.txt", _body(1200)), on_progress=events.append)

    assert result.success is True
    percents = [e.percent for e in events]
    assert percents == sorted(percents)
    assert events[0].stage == IngestionStage.QUEUED
    assert events[-1].stage == IngestionStage.DONE
    assert events[-1].percent == 100
    embedding = [e for e in events if e.stage == IngestionStage.EMBEDDING]
    assert [(e.current, e.total) for e in embedding] == [(1, 3), (2, 3), (3, 3)]
    assert all(e.document_id == result.document_id for e in events)


async def test_failing_progress_callback_does_not_abort(services, write_file):
    def broken(event: IngestionProgress) -> None:
        raise RuntimeError("ui went away")

    result = await services.pipeline.ingest(write_file("notes.txt", _body(300)), on_progress=broken)

    assert result.success is True


async def test_async_progress_callback_is_awaited(services, write_file):
    stages: list[IngestionStage] = []

    async def collect(event: IngestionProgress) -> None:
        stages.append(event.stage)

    await services.pipeline.ingest(write_file("notes.txt", _body(300)), on_progress=collect)

    assert stages[-1] == IngestionStage.DONE


async def test_failed_run_ends_with_error_event(services, write_file):
    events: list[IngestionProgress] = []

    await services.pipeline.ingest(write_file("blank.txt", "  "), on_progress=events.append)

    assert events[-1].stage == IngestionStage.ERROR
    assert "No text content" in events[-1].message


async def test_progress_channel_drops_oldest_when_full():
    channel = ProgressChannel(maxsize=3)
    for percent in range(1, 6):
        channel(IngestionProgress(stage=IngestionStage.EMBEDDING, percent=percent))
    channel.close()
    # Events after close are ignored
    channel(IngestionProgress(stage=IngestionStage.DONE, percent=100))

    received = [event.percent async for event in channel]

    assert received == [3, 4, 5]


# ── Tests: Batches and Dropped Files ─────────────────────────────────────────


async def test_ingest_directory(services, tmp_path, write_file):
    write_file("a.md", "# A\nalpha content")
    write_file("b.txt", "beta content")
    write_file("skip.exe", "not a document")
    write_file("nested/c.txt", "gamma content")

    recursive = await services.pipeline.ingest_directory(tmp_path / "docs")

    assert len(recursive) == 3
    assert all(r.success for r in recursive)

    shallow = await services.pipeline.ingest_directory(tmp_path / "docs", recursive=False)
    assert len(shallow) == 2


async def test_ingest_directory_rejects_missing_dir(services, tmp_path):
    results = await services.pipeline.ingest_directory(tmp_path / "nope")

    assert len(results) == 1
    assert results[0].success is False


async def test_ingest_bytes_saves_under_imports(services, config):
    result = await services.pipeline.ingest_bytes("../../etc/notes.md", b"# Dropped\nsome text")

    assert result.success is True
    record = await services.documents.get(result.document_id)
    assert record.name == "notes.md"
    imports_dir = config.resolved_imports_dir.resolve()
    assert Path(record.path).is_relative_to(imports_dir)
    assert Path(record.path).read_bytes() == b"# Dropped\nsome text"


async def test_ingest_bytes_rejects_unsupported_type(services, config):
    result = await services.pipeline.ingest_bytes("payload.sh", b"rm -rf /")

    assert result.success is False
    assert not config.resolved_imports_dir.exists()


def test_sanitize_file_name():
    assert sanitize_file_name("report.pdf") == "report.pdf"
    assert sanitize_file_name("../../secret.txt") == "secret.txt"
    assert sanitize_file_name("..\\windows\\notes.md") == "notes.md"
    assert sanitize_file_name('a<b>:c?.txt') == "a_b__c_.txt"
    assert sanitize_file_name("") == "file"
    assert sanitize_file_name("...") == "file"
