"""Knowledge base search endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from src.app.api.deps import get_retriever
from src.app.schemas.knowledge import SearchRequest, SearchResponse
from src.knowledge.errors import ConfigurationError
from src.knowledge.rag.retriever import HybridRetriever

router = APIRouter(prefix="/api/v1/search", tags=["search"])


@router.post("", response_model=SearchResponse)
async def search(
    body: SearchRequest,
    retriever: HybridRetriever = Depends(get_retriever),
):
    """Run a semantic, keyword or hybrid search.

    Index failures degrade to fewer (or no) results rather than errors.
    """
    try:
        results = await retriever.search(body.query, body.to_options())
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return SearchResponse(results=results, count=len(results))
