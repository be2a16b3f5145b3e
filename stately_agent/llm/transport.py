"""Completion transport protocol and shared request/response helpers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ChunkStream(Protocol):
    """A finite, ordered stream of completion chunks that can be aborted."""

    def __aiter__(self) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


@runtime_checkable
class CompletionTransport(Protocol):
    """Minimal protocol for chat-completion providers.

    Implementations must provide:
      - create(): issue a request, return the completion result
      - stream(): issue a streaming request, return a ChunkStream
    """

    async def create(self, request: dict[str, Any]) -> Any: ...

    async def stream(self, request: dict[str, Any]) -> ChunkStream: ...


@dataclass
class ToolCall:
    """A function call selected by the model, in response order."""

    id: str | None
    name: str
    arguments: str
    choice_index: int = 0


def build_request(
    prompt: str | Mapping[str, Any], model: str, *, stream: bool = False
) -> dict[str, Any]:
    """Turn an input-function result into a chat completion request.

    A plain string becomes a single user message; a mapping is copied and
    defaults to the adapter's model.
    """
    if isinstance(prompt, str):
        request: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
        }
    elif isinstance(prompt, Mapping):
        request = dict(prompt)
        request.setdefault("model", model)
    else:
        raise TypeError(
            f"Input function must return a prompt string or a request mapping, "
            f"got {type(prompt).__name__}"
        )

    if stream:
        request["stream"] = True
    else:
        request.pop("stream", None)
    logger.debug("Built completion request for model %s", request["model"])
    return request


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a response object or a plain dict."""
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def iter_tool_calls(completion: Any) -> list[ToolCall]:
    """Collect the tool calls of every choice, in the order the response lists them."""
    calls: list[ToolCall] = []
    for position, choice in enumerate(_field(completion, "choices") or []):
        message = _field(choice, "message")
        if message is None:
            continue
        index = _field(choice, "index", position)
        for tc in _field(message, "tool_calls") or []:
            function = _field(tc, "function")
            calls.append(
                ToolCall(
                    id=_field(tc, "id"),
                    name=_field(function, "name"),
                    arguments=_field(function, "arguments") or "{}",
                    choice_index=index if index is not None else position,
                )
            )
    return calls


def parse_arguments(call: ToolCall) -> dict[str, Any]:
    """Decode a tool call's JSON arguments.

    Raises ValueError when the payload is not a JSON object.
    """
    arguments = call.arguments
    if isinstance(arguments, Mapping):
        return dict(arguments)
    value = json.loads(arguments)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value
