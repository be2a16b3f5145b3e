"""Tests for the actor adapter: chat, chat stream, event choice and tool choice."""

import asyncio
import json

import pytest
from openai.types.chat import ChatCompletion

from stately_agent.actors import from_promise
from stately_agent.adapter import StatelyAgentAdapter, create_adapter, create_openai_adapter
from stately_agent.errors import (
    CompletionRequestError,
    EventMappingError,
    InvalidSchemaError,
    InvalidToolInputError,
    StreamError,
    UnknownToolError,
)
from stately_agent.llm.openai import OpenAITransport
from stately_agent.schema import create_schemas


# -- Stubs --


def make_completion(*choices, content=None):
    """Build a ChatCompletion; each positional arg is one choice's [(name, arguments), ...]."""
    payload_choices = []
    for index, calls in enumerate(choices or [[]]):
        message = {"role": "assistant", "content": content}
        if calls:
            message["tool_calls"] = [
                {
                    "id": f"call_{index}_{i}",
                    "type": "function",
                    "function": {
                        "name": name,
                        "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
                    },
                }
                for i, (name, arguments) in enumerate(calls)
            ]
        payload_choices.append(
            {
                "index": index,
                "finish_reason": "tool_calls" if calls else "stop",
                "message": message,
                "logprobs": None,
            }
        )
    return ChatCompletion.model_validate(
        {
            "id": "chatcmpl-test",
            "object": "chat.completion",
            "created": 0,
            "model": "gpt-test",
            "choices": payload_choices,
        }
    )


class StubStream:
    def __init__(self, chunks, fail_at=None):
        self._chunks = list(chunks)
        self._fail_at = fail_at
        self.close_calls = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for i, chunk in enumerate(self._chunks):
            if i == self._fail_at:
                raise ConnectionError("stream reset")
            yield chunk

    async def close(self):
        self.close_calls += 1


class StubTransport:
    """Returns a fixed completion for any request and records what it was sent."""

    def __init__(self, result=None, error=None, chunks=(), fail_at=None):
        self.result = result
        self.error = error
        self.chunks = chunks
        self.fail_at = fail_at
        self.requests = []
        self.streams = []

    async def create(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.result

    async def stream(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        stream = StubStream(self.chunks, fail_at=self.fail_at)
        self.streams.append(stream)
        return stream


class HangingTransport:
    """Never settles; records whether the in-flight request was aborted."""

    def __init__(self):
        self.started = asyncio.Event()
        self.aborted = 0

    async def create(self, request):
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.aborted += 1
            raise

    async def stream(self, request):
        raise NotImplementedError


class RecordingParent:
    def __init__(self, schemas=None, delays=None):
        self.schemas = schemas
        self.events = []
        self._delays = list(delays or [])

    async def send(self, event):
        if self._delays:
            await asyncio.sleep(self._delays.pop(0))
        self.events.append(event)


QUIZ_SCHEMAS = create_schemas(
    {"score": {"type": "number"}},
    {
        "submit": {
            "type": "object",
            "properties": {"answer": {"type": "string"}},
            "required": ["answer"],
        },
        "retry": {"type": "object", "properties": {}},
        "end game": {"type": "object", "description": "Stop playing", "properties": {}},
    },
)


def prompt(inp):
    return f"Topic: {inp['topic']}"


# -- Tests --


class TestCreateAdapter:
    def test_stores_references(self):
        transport = StubTransport()
        adapter = create_adapter("gpt-test", transport)
        assert isinstance(adapter, StatelyAgentAdapter)
        assert adapter.model == "gpt-test"
        assert adapter.transport is transport
        assert transport.requests == []

    def test_openai_adapter_wraps_client(self):
        client = object()
        adapter = create_openai_adapter(client, model="gpt-test")
        assert isinstance(adapter.transport, OpenAITransport)
        assert adapter.transport.client is client
        assert adapter.model == "gpt-test"


class TestFromChat:
    @pytest.mark.asyncio
    async def test_string_prompt_round_trip(self):
        completion = make_completion(content="What is the capital of France?")
        transport = StubTransport(result=completion)
        logic = create_adapter("gpt-test", transport).from_chat(prompt)

        result = await logic.run({"topic": "geography"})

        assert result is completion
        assert transport.requests == [
            {"model": "gpt-test", "messages": [{"role": "user", "content": "Topic: geography"}]}
        ]

    @pytest.mark.asyncio
    async def test_structured_request(self):
        transport = StubTransport(result=make_completion(content="ok"))
        logic = create_adapter("gpt-test", transport).from_chat(
            lambda inp: {"messages": [{"role": "system", "content": inp}], "temperature": 0}
        )
        await logic.run("be brief")
        assert transport.requests[0] == {
            "model": "gpt-test",
            "messages": [{"role": "system", "content": "be brief"}],
            "temperature": 0,
        }

    @pytest.mark.asyncio
    async def test_explicit_model_kept(self):
        transport = StubTransport(result=make_completion(content="ok"))
        logic = create_adapter("gpt-test", transport).from_chat(
            lambda inp: {"model": "gpt-other", "messages": []}
        )
        await logic.run(None)
        assert transport.requests[0]["model"] == "gpt-other"

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        cause = TimeoutError("upstream timed out")
        logic = create_adapter("gpt-test", StubTransport(error=cause)).from_chat(prompt)
        with pytest.raises(CompletionRequestError) as exc_info:
            await logic.run({"topic": "x"})
        assert exc_info.value.cause is cause
        assert exc_info.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_started_ref_resolves(self):
        completion = make_completion(content="hi")
        ref = create_adapter("gpt-test", StubTransport(result=completion)).from_chat(prompt).start({"topic": "x"})
        assert await ref is completion

    @pytest.mark.asyncio
    async def test_cancel_aborts_request(self):
        transport = HangingTransport()
        ref = create_adapter("gpt-test", transport).from_chat(prompt).start({"topic": "x"})
        await transport.started.wait()
        await ref.cancel()
        assert transport.aborted == 1
        with pytest.raises(asyncio.CancelledError):
            await ref


class TestFromChatStream:
    @pytest.mark.asyncio
    async def test_chunks_in_arrival_order(self):
        transport = StubTransport(chunks=["Hel", "lo", "!"])
        logic = create_adapter("gpt-test", transport).from_chat_stream(prompt)

        chunks = [chunk async for chunk in logic.start({"topic": "x"})]

        assert chunks == ["Hel", "lo", "!"]
        assert transport.requests[0]["stream"] is True
        assert transport.requests[0]["model"] == "gpt-test"

    @pytest.mark.asyncio
    async def test_open_failure(self):
        logic = create_adapter("gpt-test", StubTransport(error=ConnectionError("refused"))).from_chat_stream(prompt)
        ref = logic.start({"topic": "x"})
        with pytest.raises(StreamError):
            await ref.__anext__()
        assert [chunk async for chunk in ref] == []

    @pytest.mark.asyncio
    async def test_mid_stream_failure(self):
        transport = StubTransport(chunks=["a", "b", "c"], fail_at=1)
        ref = create_adapter("gpt-test", transport).from_chat_stream(prompt).start({"topic": "x"})
        received = []
        with pytest.raises(StreamError):
            async for chunk in ref:
                received.append(chunk)
        assert received == ["a"]
        assert transport.streams[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_closes_transport_stream_once(self):
        transport = StubTransport(chunks=["a", "b", "c"])
        ref = create_adapter("gpt-test", transport).from_chat_stream(prompt).start({"topic": "x"})
        assert await ref.__anext__() == "a"

        await ref.cancel()
        await ref.cancel()

        assert [chunk async for chunk in ref] == []
        assert transport.streams[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_new_invocation_opens_new_stream(self):
        transport = StubTransport(chunks=["a"])
        logic = create_adapter("gpt-test", transport).from_chat_stream(prompt)
        assert [c async for c in logic.start({"topic": "x"})] == ["a"]
        assert [c async for c in logic.start({"topic": "y"})] == ["a"]
        assert len(transport.streams) == 2


class TestFromEventChoice:
    @pytest.mark.asyncio
    async def test_dispatch_order(self):
        completion = make_completion(
            [("submit", {"answer": "Paris"}), ("retry", {})],
            [("end_game", {})],
        )
        parent = RecordingParent(delays=[0.02, 0.01, 0])
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )

        events = await logic.run({"topic": "x"}, parent=parent)

        expected = [
            {"type": "submit", "answer": "Paris"},
            {"type": "retry"},
            {"type": "end game"},
        ]
        assert events == expected
        assert parent.events == expected

    @pytest.mark.asyncio
    async def test_request_offers_events_as_functions(self):
        transport = StubTransport(result=make_completion())
        logic = create_adapter("gpt-test", transport).from_event_choice(prompt, events=QUIZ_SCHEMAS)
        await logic.run({"topic": "x"})

        tools = transport.requests[0]["tools"]
        assert [t["function"]["name"] for t in tools] == ["submit", "retry", "end_game"]
        submit = tools[0]["function"]["parameters"]
        assert submit["properties"] == {"answer": {"type": "string"}}
        assert submit["required"] == ["answer"]
        assert tools[2]["function"]["description"] == "Stop playing"

    @pytest.mark.asyncio
    async def test_events_from_parent_schemas(self):
        completion = make_completion([("retry", {})])
        parent = RecordingParent(schemas=QUIZ_SCHEMAS)
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(prompt)
        assert await logic.run({"topic": "x"}, parent=parent) == [{"type": "retry"}]
        assert parent.events == [{"type": "retry"}]

    @pytest.mark.asyncio
    async def test_raw_event_descriptors(self):
        completion = make_completion([("start", {})])
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events={"start": {"type": "object", "properties": {}}}, execute=False
        )
        assert await logic.run({"topic": "x"}) == [{"type": "start"}]

    @pytest.mark.asyncio
    async def test_execute_false_does_not_dispatch(self):
        completion = make_completion([("retry", {})])
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events=QUIZ_SCHEMAS, execute=False
        )
        assert await logic.run({"topic": "x"}, parent=parent) == [{"type": "retry"}]
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_no_tool_calls_resolves_none(self):
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=make_completion(content="hmm"))).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )
        assert await logic.run({"topic": "x"}, parent=parent) is None
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_malformed_arguments(self):
        completion = make_completion([("submit", "{not json")])
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )
        with pytest.raises(EventMappingError) as exc_info:
            await logic.run({"topic": "x"}, parent=parent)
        assert exc_info.value.event_type == "submit"
        assert "choice 0" in str(exc_info.value)
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_arguments_violate_event_schema(self):
        completion = make_completion([("retry", {}), ("submit", {"answer": "Paris", "confidence": 0.9})])
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )
        with pytest.raises(EventMappingError) as exc_info:
            await logic.run({"topic": "x"}, parent=parent)
        assert exc_info.value.errors
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_unknown_event(self):
        completion = make_completion([("pause", {})])
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )
        with pytest.raises(EventMappingError, match="pause"):
            await logic.run({"topic": "x"})

    @pytest.mark.asyncio
    async def test_no_event_schemas(self):
        transport = StubTransport(result=make_completion())
        logic = create_adapter("gpt-test", transport).from_event_choice(prompt)
        with pytest.raises(EventMappingError, match="No event schemas"):
            await logic.run({"topic": "x"}, parent=RecordingParent())
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_error_names_the_choice(self):
        completion = make_completion([("retry", {})], [("pause", {})])
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )
        with pytest.raises(EventMappingError, match=r"'pause' \(choice 1\)"):
            await logic.run({"topic": "x"})

    @pytest.mark.asyncio
    async def test_parent_schema_rejection_dispatches_nothing(self):
        completion = make_completion([("retry", {}), ("pause", {})])
        parent = RecordingParent(schemas=QUIZ_SCHEMAS)
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_event_choice(
            prompt,
            events={"retry": {"type": "object", "properties": {}}, "pause": {"type": "object", "properties": {}}},
        )
        with pytest.raises(EventMappingError, match="pause"):
            await logic.run({"topic": "x"}, parent=parent)
        assert parent.events == []

    def test_colliding_function_names(self):
        adapter = create_adapter("gpt-test", StubTransport(result=make_completion()))
        with pytest.raises(InvalidSchemaError):
            adapter.from_event_choice(
                prompt, events={"end game": {"type": "object"}, "end_game": {"type": "object"}}
            )

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(error=RuntimeError("500"))).from_event_choice(
            prompt, events=QUIZ_SCHEMAS
        )
        with pytest.raises(CompletionRequestError):
            await logic.run({"topic": "x"}, parent=parent)
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_cancel_prevents_dispatch(self):
        transport = HangingTransport()
        parent = RecordingParent()
        logic = create_adapter("gpt-test", transport).from_event_choice(prompt, events=QUIZ_SCHEMAS)
        ref = logic.start({"topic": "x"}, parent=parent)
        await transport.started.wait()

        await ref.cancel()

        assert transport.aborted == 1
        assert parent.events == []
        with pytest.raises(asyncio.CancelledError):
            await ref


class TestFromToolChoice:
    @staticmethod
    def search_tools(calls=None):
        async def search(scope):
            if calls is not None:
                calls.append(scope.input)
            return [f"result for {scope.input['query']}"]

        return {
            "search": {
                "description": "Search the web",
                "src": from_promise(search),
                "input_schema": {
                    "type": "object",
                    "properties": {"query": {"type": "string"}},
                    "required": ["query"],
                },
            }
        }

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        completion = make_completion([("lookup", {"query": "otters"})])
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_tool_choice(
            prompt, self.search_tools()
        )
        with pytest.raises(UnknownToolError) as exc_info:
            await logic.run({"topic": "x"}, parent=parent)
        assert exc_info.value.tool_name == "lookup"
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_invokes_nested_logic(self):
        calls = []
        completion = make_completion([("search", {"query": "otters"})])
        parent = RecordingParent()
        transport = StubTransport(result=completion)
        logic = create_adapter("gpt-test", transport).from_tool_choice(prompt, self.search_tools(calls))

        events = await logic.run({"topic": "x"}, parent=parent)

        expected = [{"type": "search", "input": {"query": "otters"}, "output": ["result for otters"]}]
        assert events == expected
        assert parent.events == expected
        assert calls == [{"query": "otters"}]
        assert transport.requests[0]["tools"] == [
            {
                "type": "function",
                "function": {
                    "name": "search",
                    "description": "Search the web",
                    "parameters": self.search_tools()["search"]["input_schema"],
                },
            }
        ]

    @pytest.mark.asyncio
    async def test_invalid_tool_input(self):
        calls = []
        completion = make_completion([("search", {"query": "otters"}), ("search", {"q": "seals"})])
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_tool_choice(
            prompt, self.search_tools(calls)
        )
        with pytest.raises(InvalidToolInputError):
            await logic.run({"topic": "x"}, parent=parent)
        assert calls == []
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_malformed_arguments(self):
        completion = make_completion([("search", "[1, 2")])
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_tool_choice(
            prompt, self.search_tools()
        )
        with pytest.raises(EventMappingError):
            await logic.run({"topic": "x"})

    @pytest.mark.asyncio
    async def test_order_and_non_invocable_tools(self):
        def add(a: int, b: int) -> int:
            """Add two numbers."""
            return a + b

        tools = {
            **self.search_tools(),
            "add": add,
            "handoff": {"description": "Hand off to a human", "src": None},
        }
        completion = make_completion(
            [("add", {"a": 1, "b": 2}), ("handoff", {})],
            [("search", {"query": "otters"})],
        )
        parent = RecordingParent(delays=[0.01, 0, 0])
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_tool_choice(prompt, tools)

        events = await logic.run({"topic": "x"}, parent=parent)

        assert [e["type"] for e in parent.events] == ["add", "handoff", "search"]
        assert events[0]["output"] == 3
        assert events[1] == {"type": "handoff", "input": {}, "output": None}

    @pytest.mark.asyncio
    async def test_events_outside_parent_schemas_not_dispatched(self):
        completion = make_completion([("search", {"query": "otters"})])
        parent = RecordingParent(schemas=QUIZ_SCHEMAS)
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_tool_choice(
            prompt, self.search_tools()
        )
        with pytest.raises(EventMappingError, match="Unknown event type 'search'"):
            await logic.run({"topic": "x"}, parent=parent)
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_execute_false(self):
        completion = make_completion([("search", {"query": "otters"})])
        parent = RecordingParent()
        logic = create_adapter("gpt-test", StubTransport(result=completion)).from_tool_choice(
            prompt, self.search_tools(), execute=False
        )
        events = await logic.run({"topic": "x"}, parent=parent)
        assert len(events) == 1
        assert parent.events == []

    @pytest.mark.asyncio
    async def test_no_tool_calls(self):
        logic = create_adapter("gpt-test", StubTransport(result=make_completion(content="no"))).from_tool_choice(
            prompt, self.search_tools()
        )
        assert await logic.run({"topic": "x"}) is None

    def test_invalid_registry_fails_at_construction(self):
        adapter = create_adapter("gpt-test", StubTransport())
        with pytest.raises(InvalidSchemaError):
            adapter.from_tool_choice(prompt, {"web search": {"description": "", "src": None}})
