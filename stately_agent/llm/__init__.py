"""Completion transport layer."""

from .openai import OpenAITransport
from .transport import ChunkStream, CompletionTransport, ToolCall, build_request, iter_tool_calls

__all__ = [
    "ChunkStream",
    "CompletionTransport",
    "OpenAITransport",
    "ToolCall",
    "build_request",
    "iter_tool_calls",
]
