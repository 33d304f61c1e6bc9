"""Streaming chat client for an Ollama server.

Posts the conversation to /api/chat with streaming enabled and yields content
increments parsed from the newline-delimited JSON response. Generation has no
read timeout (local models can take a long time per token); connecting is
bounded. ping() is a short connectivity probe.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.errors import GenerationBackendError
from src.knowledge.models import ChatMessage

logger = logging.getLogger(__name__)


class OllamaChatClient:
    """Chat completions from Ollama, streamed token by token.

    Args:
        base_url: Ollama server URL.
        default_model: Model used when a call does not name one.
        probe_timeout: Seconds allowed for connecting and for ping().
        client: Optional pre-built httpx client (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        default_model: str = "llama3",
        probe_timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._probe_timeout = probe_timeout
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(None, connect=probe_timeout),
        )

    @classmethod
    def from_config(cls, config: KnowledgeBaseConfig) -> OllamaChatClient:
        return cls(
            base_url=config.ollama_base_url,
            default_model=config.chat_model,
            probe_timeout=config.probe_timeout,
        )

    @property
    def default_model(self) -> str:
        return self._default_model

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream the assistant's reply.

        Args:
            messages: Full message list, last one being the user prompt.
            model: Model name; defaults to the client's default model.

        Yields:
            Content increments in arrival order. Malformed lines are skipped;
            iteration stops at the first line with done=true.

        Raises:
            GenerationBackendError: On connection failure or non-2xx status.
        """
        payload = {
            "model": model or self._default_model,
            "messages": [m.model_dump() for m in messages],
            "stream": True,
        }

        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise GenerationBackendError(
                        f"Ollama chat returned HTTP {response.status_code}: {body[:200]}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream line: %r", line[:100])
                        continue
                    if not isinstance(data, dict):
                        continue

                    content = (data.get("message") or {}).get("content")
                    if content:
                        yield content
                    if data.get("done"):
                        return
        except httpx.HTTPError as exc:
            raise GenerationBackendError(f"Ollama chat request failed: {exc}") from exc

    async def ping(self) -> bool:
        """Return True if the server answers /api/tags within the probe timeout."""
        try:
            response = await self._client.get("/api/tags", timeout=self._probe_timeout)
        except httpx.HTTPError:
            return False
        return response.status_code < 400

    async def aclose(self) -> None:
        await self._client.aclose()
