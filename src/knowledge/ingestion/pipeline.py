"""End-to-end ingestion pipeline connecting extraction, chunking, embedding and storage.

Orchestrates the complete document ingestion flow:

    detect_file_type() -> DocumentRepository.insert(processing)
    -> DocumentLoader.load() -> TextChunker.chunk_document()
    -> EmbeddingService.resolve() -> backend.embed() per chunk
    -> QdrantVectorIndex.upsert() in batches -> KeywordIndex.upsert()
    -> DocumentRepository.update_status(indexed)

Every document moves through pending -> processing -> indexed | error. Any
failure after the record exists removes the partial chunks, marks the record
as error and returns an unsuccessful IngestionResult; nothing propagates to
the caller. Progress events are delivered to an optional callback (or a
ProgressChannel) and never abort the pipeline when the callback fails.

Supports single files, dropped file bytes, sequential batches, directories,
re-indexing an existing record, deletion, and start-up recovery of runs
interrupted mid-way.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from pathlib import Path

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.documents.repository import MAX_LIST_LIMIT, DocumentRepository
from src.knowledge.embeddings import EmbeddingBackend, EmbeddingService
from src.knowledge.errors import (
    EmbeddingBackendError,
    EmptyDocumentError,
    UnsupportedFileTypeError,
)
from src.knowledge.ingestion.chunker import TextChunker
from src.knowledge.ingestion.loaders import SUPPORTED_EXTENSIONS, DocumentLoader, detect_file_type
from src.knowledge.keyword_index import KeywordIndex
from src.knowledge.models import (
    DeleteResult,
    DocumentRecord,
    DocumentStatus,
    IngestionProgress,
    IngestionResult,
    IngestionStage,
    KnowledgeChunk,
)
from src.knowledge.qdrant_client import QdrantVectorIndex

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IngestionProgress], Awaitable[None] | None]

INTERRUPTED_MESSAGE = "Ingestion was interrupted before indexing completed"

# Percent at which each stage starts; embedding spans EMBED_START..EMBED_END.
EXTRACT_PERCENT = 5
CHUNK_PERCENT = 15
EMBED_START = 20
EMBED_END = 85
INDEX_PERCENT = 90

_UNSAFE_NAME_CHARS = re.compile(r'[\x00-\x1f<>:"/\\|?*]')


def sanitize_file_name(name: str) -> str:
    """Make a user-supplied file name safe to write to disk.

    Drops any directory part and replaces control characters and characters
    reserved on common filesystems with underscores.
    """
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip().strip(".")
    return cleaned or "file"


def _merge_tags(*groups: Iterable[str] | None) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for tag in group or []:
            tag = tag.strip()
            if tag and tag not in merged:
                merged.append(tag)
    return merged


# ── Progress ──────────────────────────────────────────────────────────────


class ProgressChannel:
    """Bounded, ordered stream of progress events.

    Pass an instance as on_progress and iterate it from another task. When
    the buffer is full the oldest pending event is dropped, so a slow
    consumer never blocks ingestion. The pipeline does not close the
    channel; the caller does once the run returns.

    Args:
        maxsize: Maximum buffered events.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 100) -> None:
        # Unbounded so the close marker always fits; events are bounded in __call__
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._maxsize = max(1, maxsize)
        self._closed = False

    def __call__(self, event: IngestionProgress) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._maxsize:
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[IngestionProgress]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[IngestionProgress]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item  # type: ignore[misc]


class _ProgressReporter:
    """Emits monotonic progress events to a caller-supplied callback."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self.percent = 0
        self.document_id: str | None = None

    async def emit(
        self,
        stage: IngestionStage,
        percent: int,
        message: str = "",
        current: int | None = None,
        total: int | None = None,
    ) -> None:
        self.percent = max(self.percent, min(100, percent))
        if self._callback is None:
            return
        event = IngestionProgress(
            stage=stage,
            percent=self.percent,
            current=current,
            total=total,
            message=message,
            document_id=self.document_id,
        )
        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Progress callback raised, ignoring", exc_info=True)


# ── Ingestion Pipeline ────────────────────────────────────────────────────


class IngestionPipeline:
    """Orchestrates extract -> chunk -> embed -> store for documents.

    Args:
        config: Knowledge base configuration (chunk sizes, batch size, paths).
        documents: Metadata repository for document records.
        vector_index: Chunk vector storage.
        embedder: Embedding service.
        keyword_index: Full-text index; None disables keyword indexing.
        chunker: Text chunker; built from config when omitted.
        loader: Text extractor dispatcher.
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        documents: DocumentRepository,
        vector_index: QdrantVectorIndex,
        embedder: EmbeddingService,
        keyword_index: KeywordIndex | None = None,
        chunker: TextChunker | None = None,
        loader: DocumentLoader | None = None,
    ) -> None:
        self._config = config
        self._documents = documents
        self._vectors = vector_index
        self._embedder = embedder
        self._keywords = keyword_index
        self._chunker = chunker or TextChunker(config.chunk_size, config.chunk_overlap)
        self._loader = loader or DocumentLoader()
        self._batch_size = config.embedding_batch_size

    async def ingest(
        self,
        file_path: str | Path,
        kb_id: str | None = None,
        tags: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> IngestionResult:
        """Ingest a single document through the full pipeline.

        Args:
            file_path: Path to the document file.
            kb_id: Knowledge base to file the document under.
            tags: Tags for the document (front-matter tags are merged in).
            on_progress: Callback or ProgressChannel receiving progress events.

        Returns:
            IngestionResult; success is False on any failure.
        """
        path = Path(file_path)
        progress = _ProgressReporter(on_progress)

        try:
            doc_type = detect_file_type(path)
        except UnsupportedFileTypeError as exc:
            await progress.emit(IngestionStage.ERROR, 0, message=str(exc))
            return IngestionResult(success=False, message=str(exc))

        if not path.is_file():
            message = f"File not found: {path}"
            await progress.emit(IngestionStage.ERROR, 0, message=message)
            return IngestionResult(success=False, message=message)

        try:
            record = await self._documents.insert(
                DocumentRecord(
                    name=path.name,
                    path=str(path.resolve()),
                    type=doc_type,
                    size=path.stat().st_size,
                    status=DocumentStatus.PROCESSING,
                    kb_id=kb_id,
                    tags=_merge_tags(tags),
                )
            )
        except Exception as exc:
            message = f"Could not register {path.name}: {exc}"
            logger.error("Could not register %s: %s", path.name, exc)
            await progress.emit(IngestionStage.ERROR, 0, message=message)
            return IngestionResult(success=False, message=message)
        progress.document_id = record.id
        await progress.emit(IngestionStage.QUEUED, 0, message=f"Queued {record.name}")
        return await self._process(record, progress)

    async def ingest_many(
        self,
        file_paths: Iterable[str | Path],
        kb_id: str | None = None,
        tags: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[IngestionResult]:
        """Ingest several documents one after another.

        Each document is fully processed before the next one starts.
        """
        results: list[IngestionResult] = []
        for file_path in file_paths:
            results.append(await self.ingest(file_path, kb_id, tags, on_progress))
        return results

    async def ingest_directory(
        self,
        dir_path: str | Path,
        kb_id: str | None = None,
        tags: list[str] | None = None,
        recursive: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> list[IngestionResult]:
        """Ingest all supported documents in a directory.

        Args:
            dir_path: Directory to walk.
            kb_id: Knowledge base for every document.
            tags: Tags for every document.
            recursive: Whether to walk subdirectories (default True).
            on_progress: Progress callback shared by all documents.

        Returns:
            List of IngestionResult, one per file processed.
        """
        directory = Path(dir_path)
        if not directory.is_dir():
            return [IngestionResult(success=False, message=f"Not a directory: {directory}")]

        pattern = "**/*" if recursive else "*"
        files = sorted(
            p
            for p in directory.glob(pattern)
            if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
        )
        if not files:
            logger.warning("No supported files found in %s", directory)
            return []

        logger.info("Found %d supported files in %s (recursive=%s)", len(files), directory, recursive)
        return await self.ingest_many(files, kb_id, tags, on_progress)

    async def ingest_bytes(
        self,
        file_name: str,
        data: bytes,
        kb_id: str | None = None,
        tags: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> IngestionResult:
        """Save dropped file bytes under the imports directory, then ingest them.

        The file lands in imports/<uuid>/<sanitized name> so repeated drops of
        the same name never collide.
        """
        safe_name = sanitize_file_name(file_name)
        try:
            detect_file_type(safe_name)
        except UnsupportedFileTypeError as exc:
            return IngestionResult(success=False, message=str(exc))

        target = self._config.resolved_imports_dir / str(uuid.uuid4()) / safe_name

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Saved dropped file %s to %s", file_name, target)
        return await self.ingest(target, kb_id, tags, on_progress)

    async def reindex(
        self,
        document_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> IngestionResult:
        """Re-run extraction and indexing for an existing document.

        Existing chunks and the keyword entry are removed first, so exactly
        one chunk set survives.
        """
        record = await self._documents.get(document_id)
        if record is None:
            return IngestionResult(success=False, document_id=document_id, message="Document not found")

        progress = _ProgressReporter(on_progress)
        progress.document_id = record.id
        try:
            await self._documents.update_status(record.id, DocumentStatus.PROCESSING)
            await self._remove_indexed(record.id)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("Failed to reset %s for reindex: %s", record.id, message)
            await self._mark_failed(record.id, message)
            await progress.emit(IngestionStage.ERROR, 0, message=message)
            return IngestionResult(success=False, document_id=record.id, message=message)

        await progress.emit(IngestionStage.QUEUED, 0, message=f"Re-indexing {record.name}")
        return await self._process(record, progress)

    async def delete_document(self, document_id: str) -> DeleteResult:
        """Delete a document, its chunks and its keyword entry.

        Deleting an unknown document is a successful no-op. Chunks are
        removed before the record, so a failure leaves the record in place
        for a retry.
        """
        record = await self._documents.get(document_id)
        if record is None:
            return DeleteResult(success=True, deleted=False, message="Document not found")

        try:
            await self._remove_indexed(document_id)
        except Exception as exc:
            logger.error("Failed to delete indexed data for %s: %s", document_id, exc)
            return DeleteResult(success=False, deleted=False, message=str(exc))

        deleted = await self._documents.delete(document_id)
        logger.info("Deleted document %s (%s)", document_id, record.name)
        return DeleteResult(success=True, deleted=deleted, message=f"Deleted {record.name}")

    async def recover_interrupted(self) -> int:
        """Clean up documents left in processing by a crashed run.

        Returns:
            Number of documents marked as error.
        """
        # Collect every page first; marking records changes the filtered set
        stuck: list[str] = []
        while True:
            page = await self._documents.list_documents(
                status=DocumentStatus.PROCESSING, limit=MAX_LIST_LIMIT, offset=len(stuck)
            )
            if not page:
                break
            stuck.extend(record.id for record in page)

        for document_id in stuck:
            await self._mark_failed(document_id, INTERRUPTED_MESSAGE)
        if stuck:
            logger.warning("Recovered %d interrupted ingestion(s)", len(stuck))
        return len(stuck)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _process(self, record: DocumentRecord, progress: _ProgressReporter) -> IngestionResult:
        try:
            await progress.emit(IngestionStage.EXTRACTING, EXTRACT_PERCENT, message="Extracting text")
            extracted = await asyncio.to_thread(self._loader.load, record.path, record.type)

            tags = _merge_tags(record.tags, extracted.tags)
            if tags != record.tags:
                await self._documents.update_tags(record.id, tags)
                record = record.model_copy(update={"tags": tags})

            await progress.emit(IngestionStage.CHUNKING, CHUNK_PERCENT, message="Splitting text")
            chunks = self._chunker.chunk_document(extracted.text, record.id, record.kb_id)
            if not chunks:
                raise EmptyDocumentError("No text content could be extracted")

            # One backend for the whole run
            backend = await self._embedder.resolve()
            written = await self._embed_and_store(chunks, backend, progress)

            await progress.emit(IngestionStage.INDEXING, INDEX_PERCENT, message="Updating keyword index")
            if self._keywords is not None:
                await self._keywords.upsert(
                    record.id, record.name, extracted.text, record.tags, record.kb_id
                )

            await self._documents.update_status(record.id, DocumentStatus.INDEXED)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("Failed to ingest %s (%s): %s", record.name, record.id, message)
            await self._mark_failed(record.id, message)
            await progress.emit(IngestionStage.ERROR, progress.percent, message=message)
            return IngestionResult(success=False, document_id=record.id, message=message)

        logger.info("Ingested %s: %d chunks (%s)", record.name, written, record.id)
        await progress.emit(IngestionStage.DONE, 100, message=f"Indexed {written} chunks")
        return IngestionResult(
            success=True,
            document_id=record.id,
            chunk_count=written,
            message=f"Indexed {written} chunks",
        )

    async def _embed_and_store(
        self,
        chunks: list[KnowledgeChunk],
        backend: EmbeddingBackend,
        progress: _ProgressReporter,
    ) -> int:
        total = len(chunks)
        written = 0
        batch: list[KnowledgeChunk] = []

        for i, chunk in enumerate(chunks):
            vector = await backend.embed(chunk.content)
            if not vector:
                raise EmbeddingBackendError(f"Empty embedding for chunk {chunk.chunk_index}")
            chunk.embedding = vector
            batch.append(chunk)

            if len(batch) >= self._batch_size:
                written += await self._vectors.upsert(batch)
                batch = []

            percent = EMBED_START + (EMBED_END - EMBED_START) * (i + 1) // total
            await progress.emit(
                IngestionStage.EMBEDDING,
                percent,
                message=f"Embedded {i + 1}/{total} chunks",
                current=i + 1,
                total=total,
            )

        if batch:
            written += await self._vectors.upsert(batch)
        return written

    async def _remove_indexed(self, document_id: str) -> None:
        await self._vectors.delete_by_document(document_id)
        if self._keywords is not None:
            await self._keywords.delete(document_id)

    async def _mark_failed(self, document_id: str, message: str) -> None:
        """Best-effort cleanup of a failed run; errors here are logged only."""
        try:
            await self._remove_indexed(document_id)
        except Exception:
            logger.warning("Could not remove partial chunks of %s", document_id, exc_info=True)
        try:
            await self._documents.update_status(document_id, DocumentStatus.ERROR, error_message=message)
        except Exception:
            logger.warning("Could not mark %s as error", document_id, exc_info=True)
