"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
reports the metadata database, vector index, keyword index and Ollama
server; only the database and vector index are critical, because search
degrades gracefully without the keyword index and chat reports model
failures in-band.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, vector index, keyword index and Ollama. Returns check results dict."""
    services = getattr(request.app.state, "knowledge", None)
    if services is None:
        return {"knowledge": "not_initialized"}

    checks: dict = {"database": "ok", "vector_index": "ok", "keyword_index": "ok", "ollama": "ok"}

    # Check database
    try:
        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    # Check vector index (a missing collection just means nothing is indexed yet)
    try:
        checks["vector_index"] = "ok" if await services.vector_index.exists() else "empty"
    except Exception as e:
        checks["vector_index"] = "error"
        checks["vector_index_error"] = str(e)

    checks["keyword_index"] = "ok" if services.keyword_index.enabled else "disabled"

    # Check Ollama
    checks["ollama"] = "ok" if await services.llm.ping() else "unreachable"

    resolution = services.embedder.resolution
    checks["embedding_backend"] = resolution.resolved if resolution else "unresolved"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies the stores the API cannot work without.

    Returns 200 if they pass, 503 otherwise.
    """
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("vector_index") in ("ok", "empty")

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
