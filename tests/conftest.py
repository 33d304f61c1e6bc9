"""Shared fixtures for knowledge base tests.

Provides:
- A KnowledgeBaseConfig rooted in tmp_path (SQLite metadata database and
  local Qdrant storage on disk)
- A deterministic hashed bag-of-words embedding backend, so no model is
  downloaded and texts sharing words get similar vectors
- A scripted Ollama chat client built on httpx.MockTransport
- Fully wired KnowledgeServices, closed after each test
"""

from __future__ import annotations

import json
import math
import re
import zlib
from collections.abc import AsyncGenerator, Callable, Sequence
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.rag.llm import OllamaChatClient
from src.knowledge.services import KnowledgeServices

EMBEDDING_DIMS = 64
OLLAMA_TEST_URL = "http://ollama.test"

_WORD_RE = re.compile(r"\w+")


# ── Test Doubles ─────────────────────────────────────────────────────────────


def hashed_vector(text: str, dims: int = EMBEDDING_DIMS) -> list[float]:
    """Unit-length bag-of-words vector; every word hashes to one dimension."""
    vector = [0.0] * dims
    for word in _WORD_RE.findall(text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % dims] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if not norm:
        return vector
    return [v / norm for v in vector]


class FakeEmbeddingBackend:
    """In-memory embedding backend recording every call.

    Args:
        name: Backend name to report ("local" or "remote").
        fail_init: Raise from initialize().
        fail_after: Raise from embed() once this many calls succeeded.
    """

    def __init__(
        self,
        name: str = "local",
        fail_init: bool = False,
        fail_after: int | None = None,
    ) -> None:
        self.name = name
        self.fail_init = fail_init
        self.fail_after = fail_after
        self.calls: list[str] = []
        self.closed = False

    async def initialize(self) -> None:
        if self.fail_init:
            raise RuntimeError(f"{self.name} backend unavailable")

    async def embed(self, text: str) -> list[float]:
        from src.knowledge.errors import EmbeddingBackendError

        if self.fail_after is not None and len(self.calls) >= self.fail_after:
            raise EmbeddingBackendError("embedding server went away")
        self.calls.append(text)
        return hashed_vector(text)

    async def aclose(self) -> None:
        self.closed = True


def ollama_chat_transport(
    tokens: Sequence[str] = (),
    status_code: int = 200,
    requests: list[dict] | None = None,
) -> httpx.MockTransport:
    """MockTransport answering /api/chat with NDJSON and /api/tags with 200."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        if requests is not None:
            requests.append(json.loads(request.content))
        if status_code >= 400:
            return httpx.Response(status_code, text="model 'missing' not found")
        lines = [
            json.dumps({"message": {"role": "assistant", "content": token}, "done": False})
            for token in tokens
        ]
        lines.append(json.dumps({"message": {"role": "assistant", "content": ""}, "done": True}))
        return httpx.Response(200, content="\n".join(lines) + "\n")

    return httpx.MockTransport(handler)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path: Path) -> KnowledgeBaseConfig:
    """KnowledgeBaseConfig with all state under a temporary directory."""
    return KnowledgeBaseConfig(
        data_dir=str(tmp_path / "kb"),
        embedding_backend="local",
        ollama_base_url=OLLAMA_TEST_URL,
    )


@pytest.fixture
def backend_factory() -> type[FakeEmbeddingBackend]:
    """The fake backend class, for tests that need failing variants."""
    return FakeEmbeddingBackend


@pytest.fixture
def embed_text() -> Callable[[str], list[float]]:
    """The fake model's embedding function, for building query vectors."""
    return hashed_vector


@pytest.fixture
def fake_backend() -> FakeEmbeddingBackend:
    return FakeEmbeddingBackend()


@pytest.fixture
def embedder(config, fake_backend) -> EmbeddingService:
    """EmbeddingService whose local backend is the fake bag-of-words model."""
    return EmbeddingService(
        config,
        local_factory=lambda _cfg: fake_backend,
        remote_factory=lambda _cfg: FakeEmbeddingBackend(name="remote"),
    )


@pytest.fixture
def chat_client_factory() -> Callable[..., OllamaChatClient]:
    """Build OllamaChatClient instances answering from a scripted transport."""

    def _factory(
        tokens: Sequence[str] = (),
        status_code: int = 200,
        requests: list[dict] | None = None,
    ) -> OllamaChatClient:
        client = httpx.AsyncClient(
            base_url=OLLAMA_TEST_URL,
            transport=ollama_chat_transport(tokens, status_code, requests),
        )
        return OllamaChatClient(OLLAMA_TEST_URL, client=client)

    return _factory


@pytest_asyncio.fixture
async def services(
    config, embedder, chat_client_factory
) -> AsyncGenerator[KnowledgeServices, None]:
    """Fully wired services on temporary storage with fake models."""
    knowledge = await KnowledgeServices.create(
        config,
        embedder=embedder,
        llm=chat_client_factory(["Paris ", "is the capital."]),
    )
    yield knowledge
    await knowledge.close()


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[..., Path]:
    """Write a text file under tmp_path/docs and return its path."""

    def _write(name: str, content: str | bytes) -> Path:
        path = tmp_path / "docs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write
