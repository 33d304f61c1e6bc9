"""Document ingestion and management endpoints.

Ingests files by path or by uploaded bytes, streams ingestion progress via
Server-Sent Events, and lists, inspects, deletes and re-indexes documents.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from src.app.api.deps import get_pipeline, get_services
from src.app.schemas.knowledge import DocumentListResponse, IngestRequest
from src.knowledge.ingestion.pipeline import IngestionPipeline, ProgressChannel
from src.knowledge.models import DeleteResult, DocumentRecord, DocumentStatus, IngestionResult
from src.knowledge.services import KnowledgeServices

router = APIRouter(prefix="/api/v1/documents", tags=["documents"])


def _raise_if_rejected(result: IngestionResult) -> IngestionResult:
    # No record means the input was rejected before ingestion started.
    if not result.success and result.document_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)
    return result


@router.post("", response_model=IngestionResult)
async def ingest_document(
    body: IngestRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Ingest a file from disk and wait for the result.

    Returns 400 for unsupported or missing files. Failures after the record
    was created return success=false with the document id; the document is
    left in status error.
    """
    result = await pipeline.ingest(body.path, kb_id=body.kb_id, tags=body.tags)
    return _raise_if_rejected(result)


@router.post("/stream")
async def ingest_document_stream(
    body: IngestRequest,
    services: KnowledgeServices = Depends(get_services),
):
    """Ingest a file and stream progress as Server-Sent Events.

    Emits `progress` events while running and one final `result` event.
    """
    channel = ProgressChannel(maxsize=services.config.progress_queue_size)
    task = asyncio.create_task(
        services.pipeline.ingest(body.path, kb_id=body.kb_id, tags=body.tags, on_progress=channel)
    )
    task.add_done_callback(lambda _: channel.close())

    async def event_generator():
        async for event in channel:
            yield f"event: progress\ndata: {event.model_dump_json()}\n\n"
        result = await task
        yield f"event: result\ndata: {result.model_dump_json()}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.put("/upload", response_model=IngestionResult)
async def upload_document(
    request: Request,
    file_name: str = Query(..., min_length=1),
    kb_id: str | None = Query(default=None),
    tags: list[str] = Query(default=[]),
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Ingest raw file bytes sent as the request body.

    The bytes are saved under the imports directory with a sanitized name.
    """
    data = await request.body()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    result = await pipeline.ingest_bytes(file_name, data, kb_id=kb_id, tags=tags)
    return _raise_if_rejected(result)


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    kb_id: str | None = Query(default=None),
    status_filter: DocumentStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50),
    offset: int = Query(default=0, ge=0),
    services: KnowledgeServices = Depends(get_services),
):
    """List documents, newest first. The limit is clamped to 1..500."""
    documents = await services.documents.list_documents(
        kb_id=kb_id, status=status_filter, limit=limit, offset=offset
    )
    return DocumentListResponse(documents=documents, count=len(documents))


@router.get("/{document_id}", response_model=DocumentRecord)
async def get_document(
    document_id: str,
    services: KnowledgeServices = Depends(get_services),
):
    record = await services.documents.get(document_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return record


@router.delete("/{document_id}", response_model=DeleteResult)
async def delete_document(
    document_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Delete a document with its chunks. Deleting twice is a no-op."""
    result = await pipeline.delete_document(document_id)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.message)
    return result


@router.post("/{document_id}/reindex", response_model=IngestionResult)
async def reindex_document(
    document_id: str,
    services: KnowledgeServices = Depends(get_services),
):
    """Re-extract and re-index an existing document."""
    if await services.documents.get(document_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return await services.pipeline.reindex(document_id)
