"""Invocable actor units (one-shot and streaming) for a state-machine executor."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar, runtime_checkable

from .errors import StreamError
from .llm.transport import ChunkStream

logger = logging.getLogger(__name__)

TInput = TypeVar("TInput")
TOutput = TypeVar("TOutput")


@runtime_checkable
class EventTarget(Protocol):
    """Anything that accepts events from a child actor (usually the parent machine).

    ``send`` may return an awaitable; it is awaited before the actor moves on.
    """

    def send(self, event: dict[str, Any]) -> Any: ...


@dataclass
class ActorScope(Generic[TInput]):
    """Provided to each actor body.

    Attributes:
        input: The typed input the executor supplied.
        parent: Where produced events are dispatched (None when run standalone).
        cancelled: Set once the owning ref is cancelled; terminal.
    """

    input: TInput
    parent: EventTarget | None = None
    cancelled: bool = False

    async def send_parent(self, event: dict[str, Any]) -> bool:
        """Dispatch one event to the parent. Returns False if nothing was sent."""
        if self.cancelled or self.parent is None:
            return False
        result = self.parent.send(event)
        if inspect.isawaitable(result):
            await result
        return True


class PromiseActorLogic(Generic[TOutput, TInput]):
    """One-shot unit: runs its body once per invocation and resolves or raises."""

    def __init__(
        self,
        body: Callable[[ActorScope[TInput]], Awaitable[TOutput]],
        name: str | None = None,
    ):
        self._body = body
        self.name = name or getattr(body, "__name__", "promise")

    async def run(self, input: TInput, *, parent: EventTarget | None = None) -> TOutput:
        """Invoke inline and return the result."""
        return await self._body(ActorScope(input=input, parent=parent))

    def start(self, input: TInput, *, parent: EventTarget | None = None) -> ActorRef[TOutput]:
        """Schedule the body as a task on the running loop."""
        scope: ActorScope[TInput] = ActorScope(input=input, parent=parent)
        task = asyncio.ensure_future(self._body(scope))
        return ActorRef(task, scope, self.name)

    def __repr__(self) -> str:
        return f"PromiseActorLogic({self.name!r})"


class ActorRef(Generic[TOutput]):
    """Handle to a running one-shot actor."""

    def __init__(self, task: asyncio.Future, scope: ActorScope, name: str):
        self._task = task
        self._scope = scope
        self.name = name

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._scope.cancelled

    async def result(self) -> TOutput:
        if self._scope.cancelled:
            raise asyncio.CancelledError(f"Actor '{self.name}' was cancelled")
        return await self._task

    def __await__(self):
        return self.result().__await__()

    async def cancel(self) -> None:
        """Stop the actor. Idempotent; cancelling the task aborts the in-flight request."""
        if self._scope.cancelled:
            return
        self._scope.cancelled = True
        if not self._task.done():
            self._task.cancel()
            logger.debug("Cancelled actor '%s'", self.name)
        await asyncio.wait([self._task])


class ObservableActorLogic(Generic[TOutput, TInput]):
    """Streaming unit: each start opens a new stream through ``open_stream``."""

    def __init__(
        self,
        open_stream: Callable[[ActorScope[TInput]], Awaitable[ChunkStream]],
        name: str | None = None,
    ):
        self._open_stream = open_stream
        self.name = name or getattr(open_stream, "__name__", "observable")

    def start(self, input: TInput, *, parent: EventTarget | None = None) -> StreamRef[TOutput]:
        scope: ActorScope[TInput] = ActorScope(input=input, parent=parent)
        return StreamRef(lambda: self._open_stream(scope), scope, self.name)

    def __repr__(self) -> str:
        return f"ObservableActorLogic({self.name!r})"


class StreamRef(Generic[TOutput]):
    """Lazy, cancellable async iterator over the chunks of one stream.

    The underlying stream is opened on first iteration (or by ``open()``)
    and closed exactly once: at end-of-stream, on error, or on ``cancel()``.
    """

    def __init__(self, open_stream: Callable[[], Awaitable[ChunkStream]], scope: ActorScope, name: str):
        self._open_stream = open_stream
        self._scope = scope
        self.name = name
        self._stream: ChunkStream | None = None
        self._iterator: Any = None
        self._finished = False
        self._closed = False
        self._received = 0

    @property
    def cancelled(self) -> bool:
        return self._scope.cancelled

    @property
    def received(self) -> int:
        return self._received

    async def open(self) -> None:
        """Open the underlying stream if it is not open yet."""
        if self._stream is not None or self._finished or self._scope.cancelled:
            return
        try:
            stream = await self._open_stream()
        except Exception:
            self._finished = True
            raise
        self._stream = stream
        self._iterator = stream.__aiter__()
        if self._scope.cancelled:
            # cancelled while the request was in flight
            await self._close()

    def __aiter__(self) -> StreamRef[TOutput]:
        return self

    async def __anext__(self) -> TOutput:
        await self.open()
        if self._finished or self._scope.cancelled:
            raise StopAsyncIteration

        try:
            chunk = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._finished = True
            await self._close()
            raise
        except Exception as e:
            self._finished = True
            if self._scope.cancelled:
                raise StopAsyncIteration
            await self._close()
            logger.warning("Stream '%s' failed after %d chunk(s): %s", self.name, self._received, e)
            raise StreamError(e, self._received) from e

        if self._scope.cancelled:
            raise StopAsyncIteration
        self._received += 1
        return chunk

    async def cancel(self) -> None:
        """Abort the stream. Idempotent; no chunk is emitted afterwards."""
        if self._scope.cancelled:
            return
        self._scope.cancelled = True
        await self._close()

    async def _close(self) -> None:
        if self._closed or self._stream is None:
            return
        self._closed = True
        await self._stream.close()


def from_promise(
    body: Callable[[ActorScope[TInput]], Awaitable[TOutput]], name: str | None = None
) -> PromiseActorLogic[TOutput, TInput]:
    """Wrap ``async def body(scope)`` as one-shot actor logic."""
    return PromiseActorLogic(body, name=name)
