"""Tests for the embedding backends and backend resolution.

The Ollama backend is exercised against httpx.MockTransport; resolution
logic uses fake backends so no model is loaded and no server is needed.
"""

from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService, OllamaEmbeddingBackend
from src.knowledge.errors import EmbeddingBackendError


# ── Helpers ─────────────────────────────────────────────────────────────────


def _ollama_backend(handler) -> OllamaEmbeddingBackend:
    client = httpx.AsyncClient(
        base_url="http://ollama.test", transport=httpx.MockTransport(handler)
    )
    return OllamaEmbeddingBackend("http://ollama.test", "nomic-embed-text:latest", client=client)


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    """Retry immediately so transport-error tests stay fast."""
    monkeypatch.setattr(OllamaEmbeddingBackend._post_embed.retry, "wait", wait_none())


# ── Tests: Ollama Backend ───────────────────────────────────────────────────


async def test_ollama_embed_parses_embeddings_array():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"embeddings": [[0.1, 0.2, 0.3]]})

    backend = _ollama_backend(handler)

    assert await backend.embed("hello") == [0.1, 0.2, 0.3]
    assert seen == [{"model": "nomic-embed-text:latest", "input": "hello"}]
    await backend.aclose()


async def test_ollama_embed_accepts_legacy_embedding_field():
    backend = _ollama_backend(lambda request: httpx.Response(200, json={"embedding": [1, 2]}))

    assert await backend.embed("hello") == [1.0, 2.0]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(200, json={"embeddings": []}),
        httpx.Response(200, json={"other": True}),
        httpx.Response(200, content=b"not json"),
    ],
)
async def test_ollama_embed_failures_raise(response):
    backend = _ollama_backend(lambda request: response)

    with pytest.raises(EmbeddingBackendError):
        await backend.embed("hello")


async def test_ollama_transport_errors_are_retried():
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"embeddings": [[0.5]]})

    backend = _ollama_backend(handler)

    assert await backend.embed("hello") == [0.5]
    assert attempts["n"] == 3


async def test_ollama_persistent_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = _ollama_backend(handler)

    with pytest.raises(EmbeddingBackendError, match="request failed"):
        await backend.embed("hello")


# ── Tests: Resolution ───────────────────────────────────────────────────────


async def test_resolution_is_memoised(config, backend_factory):
    created = []

    def local_factory(cfg):
        backend = backend_factory()
        created.append(backend)
        return backend

    service = EmbeddingService(config, local_factory=local_factory)

    await service.embed("first")
    await service.embed("second")

    assert len(created) == 1
    assert created[0].calls == ["first", "second"]
    assert service.resolution.resolved == "local"


async def test_blank_text_skips_backend(config, backend_factory):
    created = []
    service = EmbeddingService(config, local_factory=lambda cfg: created.append(1) or backend_factory())

    assert await service.embed("   ") == []
    assert created == []
    assert service.resolution is None


async def test_auto_falls_back_to_remote(config, backend_factory):
    config = config.model_copy(update={"embedding_backend": "auto"})
    service = EmbeddingService(
        config,
        local_factory=lambda cfg: backend_factory(fail_init=True),
        remote_factory=lambda cfg: backend_factory(name="remote"),
    )

    assert await service.initialize() == "remote"
    assert service.resolution.requested == "auto"
    assert service.resolution.resolved == "remote"


async def test_explicit_local_failure_raises(config, backend_factory):
    service = EmbeddingService(
        config,
        local_factory=lambda cfg: backend_factory(fail_init=True),
        remote_factory=lambda cfg: backend_factory(name="remote"),
    )

    with pytest.raises(EmbeddingBackendError, match="Local embedding backend unavailable"):
        await service.initialize("local")


async def test_preference_change_reresolves(config, backend_factory):
    local = backend_factory()
    service = EmbeddingService(
        config,
        local_factory=lambda cfg: local,
        remote_factory=lambda cfg: backend_factory(name="remote"),
    )

    assert await service.initialize() == "local"
    assert await service.initialize("remote") == "remote"
    assert local.closed


async def test_apply_config_invalidates_only_on_relevant_change(config, backend_factory):
    created = []

    def local_factory(cfg):
        created.append(cfg.local_embedding_model)
        return backend_factory()

    service = EmbeddingService(config, local_factory=local_factory)
    await service.initialize()

    unchanged = config.model_copy(update={"chunk_size": 800})
    assert await service.apply_config(unchanged) is False
    assert service.resolution is not None

    changed = config.model_copy(update={"local_embedding_model": "BAAI/bge-small-en-v1.5"})
    assert await service.apply_config(changed) is True
    assert service.resolution is None

    await service.embed("again")
    assert created == [config.local_embedding_model, "BAAI/bge-small-en-v1.5"]


async def test_warmup_never_raises(config, backend_factory):
    service = EmbeddingService(
        config.model_copy(update={"embedding_backend": "local"}),
        local_factory=lambda cfg: backend_factory(fail_init=True),
    )

    await service.warmup()

    assert service.resolution is None


async def test_warmup_primes_remote_backend(backend_factory):
    remote = backend_factory(name="remote")
    service = EmbeddingService(
        KnowledgeBaseConfig(embedding_backend="remote"),
        remote_factory=lambda cfg: remote,
    )

    await service.warmup()

    assert remote.calls == ["warmup"]
