"""Retrieval-augmented chat endpoint.

Streams one chat turn as Server-Sent Events:

    event: sources  -> JSON list of cited documents (always first)
    event: token    -> JSON {"token": "..."} per increment
    event: done     -> end of the answer
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from src.app.api.deps import get_chat
from src.app.schemas.knowledge import ChatRequest
from src.knowledge.rag.pipeline import RAGChatOrchestrator

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])


@router.post("")
async def chat(
    body: ChatRequest,
    orchestrator: RAGChatOrchestrator = Depends(get_chat),
):
    """Answer a question from the knowledge base, streamed token by token."""
    turn = orchestrator.start_chat_turn(
        body.query,
        history=body.history,
        model=body.model,
        session_id=body.session_id,
        kb_id=body.kb_id,
    )

    async def event_generator():
        completed = False
        try:
            sources = await turn.sources()
            payload = json.dumps([s.model_dump() for s in sources])
            yield f"event: sources\ndata: {payload}\n\n"

            async for event in turn.tokens():
                if event.done:
                    completed = True
                    yield "event: done\ndata: [DONE]\n\n"
                    break
                yield f"event: token\ndata: {json.dumps({'token': event.token})}\n\n"
        finally:
            # Client went away mid-answer
            if not completed:
                turn.cancel()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
