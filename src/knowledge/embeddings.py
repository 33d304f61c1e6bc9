"""Embedding service with pluggable local and remote backends.

Two backends produce dense vectors for chunk and query text:

- local: fastembed TextEmbedding running in-process (no network). Model load
  and inference run in a worker thread so the event loop stays responsive.
- remote: an Ollama server's /api/embed endpoint over httpx, with transport
  errors retried via tenacity.

EmbeddingService owns a BackendResolution: the backend chosen for the current
configuration. It is resolved lazily on first use, memoised, and invalidated
by reset() or when apply_config() sees the backend choice, base URL or model
name change. "auto" tries the local backend and falls back to remote without
a connectivity probe.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.errors import EmbeddingBackendError

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"
AUTO = "auto"


class EmbeddingBackend(Protocol):
    """Interface shared by the local and remote backends."""

    name: str

    async def initialize(self) -> None: ...

    async def embed(self, text: str) -> list[float]: ...

    async def aclose(self) -> None: ...


# ── Local Backend ───────────────────────────────────────────────────────────


class LocalEmbeddingBackend:
    """In-process fastembed model.

    Args:
        model_name: fastembed model identifier.
    """

    name = LOCAL

    def __init__(self, model_name: str) -> None:
        self._model_name = model_name
        # Lazy-initialize on first use (heavy import + model download)
        self._model: Any = None

    def _load_model(self) -> Any:
        from fastembed import TextEmbedding

        return TextEmbedding(model_name=self._model_name)

    async def initialize(self) -> None:
        if self._model is None:
            self._model = await asyncio.to_thread(self._load_model)
            logger.info("Loaded local embedding model %s", self._model_name)

    def _embed_sync(self, text: str) -> list[float]:
        vector = next(iter(self._model.embed([text])))
        return [float(v) for v in vector]

    async def embed(self, text: str) -> list[float]:
        await self.initialize()
        try:
            return await asyncio.to_thread(self._embed_sync, text)
        except Exception as exc:
            raise EmbeddingBackendError(f"Local embedding failed: {exc}") from exc

    async def aclose(self) -> None:
        self._model = None


# ── Remote Backend ──────────────────────────────────────────────────────────


class OllamaEmbeddingBackend:
    """Embeddings from an Ollama server.

    Args:
        base_url: Ollama server URL (e.g. http://localhost:11434).
        model: Embedding model name.
        connect_timeout: Seconds allowed to establish a connection.
        client: Optional pre-built httpx client (tests inject a MockTransport).
    """

    name = REMOTE

    def __init__(
        self,
        base_url: str,
        model: str,
        connect_timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(60.0, connect=connect_timeout),
        )

    async def initialize(self) -> None:
        # No probe: the first embed surfaces connectivity problems.
        return None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post_embed(self, text: str) -> httpx.Response:
        return await self._client.post(
            "/api/embed", json={"model": self._model, "input": text}
        )

    async def embed(self, text: str) -> list[float]:
        """Request one embedding vector.

        Raises:
            EmbeddingBackendError: On transport failure, non-2xx status,
                malformed JSON, or a response without a vector.
        """
        try:
            response = await self._post_embed(text)
        except httpx.TransportError as exc:
            raise EmbeddingBackendError(f"Ollama embed request failed: {exc}") from exc

        if response.status_code >= 400:
            raise EmbeddingBackendError(
                f"Ollama embed returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingBackendError("Ollama embed returned malformed JSON") from exc

        vector: Any = None
        if isinstance(data, dict):
            embeddings = data.get("embeddings")
            if isinstance(embeddings, list) and embeddings:
                vector = embeddings[0]
            else:
                vector = data.get("embedding")

        if not isinstance(vector, list) or not vector:
            raise EmbeddingBackendError("Ollama embed response contained no vector")
        return [float(v) for v in vector]

    async def aclose(self) -> None:
        await self._client.aclose()


# ── Resolution ──────────────────────────────────────────────────────────────


class BackendResolution(BaseModel):
    """The configuration a backend was resolved for.

    A resolution stays valid while the requested backend, base URL and model
    names are unchanged.
    """

    requested: str
    resolved: str
    base_url: str
    model: str
    local_model: str

    @classmethod
    def key_for(cls, config: KnowledgeBaseConfig) -> tuple[str, str, str, str]:
        return (
            config.embedding_backend,
            config.ollama_base_url,
            config.embedding_model,
            config.local_embedding_model,
        )

    def key(self) -> tuple[str, str, str, str]:
        return (self.requested, self.base_url, self.model, self.local_model)


BackendFactory = Callable[[KnowledgeBaseConfig], EmbeddingBackend]


def _default_local_factory(config: KnowledgeBaseConfig) -> EmbeddingBackend:
    return LocalEmbeddingBackend(config.local_embedding_model)


def _default_remote_factory(config: KnowledgeBaseConfig) -> EmbeddingBackend:
    return OllamaEmbeddingBackend(
        base_url=config.ollama_base_url,
        model=config.embedding_model,
        connect_timeout=config.probe_timeout,
    )


class EmbeddingService:
    """Produces embedding vectors through the resolved backend.

    Args:
        config: Knowledge base configuration (backend choice, URLs, models).
        local_factory: Builds the local backend; defaults to fastembed.
        remote_factory: Builds the remote backend; defaults to Ollama.
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        local_factory: BackendFactory | None = None,
        remote_factory: BackendFactory | None = None,
    ) -> None:
        self._config = config
        self._local_factory = local_factory or _default_local_factory
        self._remote_factory = remote_factory or _default_remote_factory
        self._lock = asyncio.Lock()
        self._backend: EmbeddingBackend | None = None
        self._resolution: BackendResolution | None = None

    @property
    def resolution(self) -> BackendResolution | None:
        """Current resolution, or None if not yet resolved."""
        return self._resolution

    async def initialize(self, preferred: str | None = None) -> str:
        """Resolve the backend if needed and return its name.

        Args:
            preferred: "local", "remote" or "auto". Overrides the configured
                choice; a different preference than the current resolution
                triggers re-resolution.

        Returns:
            The resolved backend name ("local" or "remote").

        Raises:
            EmbeddingBackendError: If no backend could be initialized.
        """
        backend = await self.resolve(preferred)
        return backend.name

    async def resolve(self, preferred: str | None = None) -> EmbeddingBackend:
        """Return the resolved backend, resolving it once under a lock."""
        requested = preferred or self._config.embedding_backend
        async with self._lock:
            if (
                self._backend is not None
                and self._resolution is not None
                and (preferred is None or self._resolution.requested == preferred)
            ):
                return self._backend

            if self._backend is not None:
                await self._backend.aclose()
                self._backend = None
                self._resolution = None

            backend = await self._resolve_backend(requested)
            self._backend = backend
            self._resolution = BackendResolution(
                requested=requested,
                resolved=backend.name,
                base_url=self._config.ollama_base_url,
                model=self._config.embedding_model,
                local_model=self._config.local_embedding_model,
            )
            logger.info("Embedding backend resolved: requested=%s resolved=%s", requested, backend.name)
            return backend

    async def _resolve_backend(self, requested: str) -> EmbeddingBackend:
        if requested == REMOTE:
            backend = self._remote_factory(self._config)
            await backend.initialize()
            return backend

        if requested not in (LOCAL, AUTO):
            raise EmbeddingBackendError(f"Unknown embedding backend: {requested!r}")

        local = self._local_factory(self._config)
        try:
            await local.initialize()
            return local
        except Exception as exc:
            if requested == LOCAL:
                raise EmbeddingBackendError(f"Local embedding backend unavailable: {exc}") from exc
            logger.warning("Local embedding backend unavailable, falling back to remote: %s", exc)

        remote = self._remote_factory(self._config)
        await remote.initialize()
        return remote

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Blank input returns an empty vector without touching any backend.

        Raises:
            EmbeddingBackendError: If the backend fails.
        """
        if not text or not text.strip():
            return []
        backend = await self.resolve()
        return await backend.embed(text)

    async def reset(self) -> None:
        """Forget the current resolution; the next call re-resolves."""
        async with self._lock:
            if self._backend is not None:
                await self._backend.aclose()
            self._backend = None
            self._resolution = None

    async def apply_config(self, config: KnowledgeBaseConfig) -> bool:
        """Adopt new configuration, invalidating the resolution if it matters.

        Returns:
            True if the resolution was invalidated.
        """
        changed = BackendResolution.key_for(config) != BackendResolution.key_for(self._config)
        self._config = config
        if changed:
            logger.info("Embedding configuration changed, resetting backend")
            await self.reset()
        return changed

    async def warmup(self) -> None:
        """Resolve the backend ahead of the first request.

        For the remote backend a throwaway embed primes the server's model.
        Failures are logged and never raised.
        """
        try:
            backend = await self.resolve()
            if backend.name == REMOTE:
                await backend.embed("warmup")
            logger.info("Embedding warmup complete (%s)", backend.name)
        except Exception:
            logger.warning("Embedding warmup failed", exc_info=True)

    async def close(self) -> None:
        await self.reset()
