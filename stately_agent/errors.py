"""Custom exceptions for stately-agent."""

from __future__ import annotations

from typing import Any


class StatelyAgentError(Exception):
    """Base class for every error raised by this package."""
    pass


class InvalidSchemaError(StatelyAgentError):
    """Raised at configuration time when a field or event descriptor is malformed."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


class CompletionRequestError(StatelyAgentError):
    """Raised when the transport fails to produce a completion."""

    def __init__(self, cause: BaseException, model: str | None = None):
        self.cause = cause
        self.model = model
        super().__init__(f"Completion request failed ({model or 'unknown model'}): {cause}")


class StreamError(StatelyAgentError):
    """Raised when a completion stream fails while opening or mid-stream."""

    def __init__(self, cause: BaseException, chunks_received: int = 0):
        self.cause = cause
        self.chunks_received = chunks_received
        super().__init__(
            f"Completion stream failed after {chunks_received} chunk(s): {cause}"
        )


class EventMappingError(StatelyAgentError):
    """Raised when a completion choice cannot be turned into a declared event."""

    def __init__(self, message: str, event_type: str | None = None, errors: list[str] | None = None):
        self.event_type = event_type
        self.errors = errors or []
        super().__init__(message)


class InvalidToolInputError(StatelyAgentError):
    """Raised when tool-call arguments do not match the tool's input schema."""

    def __init__(self, tool_name: str, arguments: Any, errors: list[str]):
        self.tool_name = tool_name
        self.arguments = arguments
        self.errors = errors
        super().__init__(f"Invalid input for tool '{tool_name}': {'; '.join(errors)}")


class UnknownToolError(StatelyAgentError):
    """Raised when the model calls a tool that is not in the registry."""

    def __init__(self, tool_name: str, available: list[str] | None = None):
        self.tool_name = tool_name
        self.available = available or []
        super().__init__(
            f"Tool '{tool_name}' not found (available: {', '.join(self.available) or 'none'})"
        )
