"""OpenAI-compatible completion transport."""

from __future__ import annotations

from typing import Any

from .transport import ChunkStream


class OpenAITransport:
    """Transport for the OpenAI chat completions API (async client)."""

    def __init__(self, client: Any = None, api_key: str | None = None, **kwargs):
        if client is None:
            try:
                import openai
            except ImportError:
                raise ImportError("Install openai: pip install openai")
            client = openai.AsyncOpenAI(api_key=api_key, **kwargs)
        self._client = client

    @property
    def client(self) -> Any:
        return self._client

    async def create(self, request: dict[str, Any]) -> Any:
        params = dict(request)
        params.pop("stream", None)
        return await self._client.chat.completions.create(**params)

    async def stream(self, request: dict[str, Any]) -> ChunkStream:
        params = dict(request)
        params["stream"] = True
        # openai.AsyncStream is async-iterable and exposes an async close()
        return await self._client.chat.completions.create(**params)
