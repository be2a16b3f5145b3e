"""Actor adapter: wraps chat completions, streams and tool choice as state-machine actors."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .actors import ActorScope, ObservableActorLogic, PromiseActorLogic
from .errors import CompletionRequestError, EventMappingError, InvalidSchemaError, StreamError
from .llm.transport import ChunkStream, CompletionTransport, build_request, iter_tool_calls, parse_arguments
from .schema import EVENT_TYPE_KEY, SchemaBundle, create_event_schemas, safe_identifier, validation_errors
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

InputFn = Callable[[Any], "str | dict[str, Any]"]


@dataclass(frozen=True)
class StatelyAgentAdapter:
    """Produces actor logic bound to one model and one shared transport.

    Usage:
        adapter = create_openai_adapter(model="gpt-4o")
        fetch_question = adapter.from_chat(
            lambda inp: f"Ask me a short question about {inp['topic']}"
        )
        completion = await fetch_question.run({"topic": "rivers"})
    """

    model: str
    transport: CompletionTransport

    async def _complete(self, request: dict[str, Any]) -> Any:
        try:
            return await self.transport.create(request)
        except Exception as e:
            logger.warning("Completion request to %s failed: %s", request.get("model"), e)
            raise CompletionRequestError(e, model=request.get("model")) from e

    def from_chat(self, input_fn: InputFn) -> PromiseActorLogic:
        """Creates promise actor logic that resolves with a chat completion."""

        async def chat(scope: ActorScope) -> Any:
            request = build_request(input_fn(scope.input), self.model)
            return await self._complete(request)

        return PromiseActorLogic(chat, name="chat")

    def from_chat_stream(self, input_fn: InputFn) -> ObservableActorLogic:
        """Creates observable actor logic that emits a chat completion stream."""

        async def chat_stream(scope: ActorScope) -> ChunkStream:
            request = build_request(input_fn(scope.input), self.model, stream=True)
            try:
                return await self.transport.stream(request)
            except Exception as e:
                logger.warning("Opening completion stream to %s failed: %s", self.model, e)
                raise StreamError(e) from e

        return ObservableActorLogic(chat_stream, name="chat_stream")

    def from_event_choice(
        self,
        input_fn: InputFn,
        *,
        execute: bool = True,
        events: SchemaBundle | Mapping[str, Any] | None = None,
    ) -> PromiseActorLogic:
        """Creates promise actor logic that lets the model choose machine events.

        Each event schema is offered to the model as a function; every tool
        call in the response becomes one event ``{"type": name, **arguments}``.

        Args:
            input_fn: Maps the actor input to a prompt or a full request.
            execute: Immediately send the events to the parent actor.
            events: A SchemaBundle or raw event descriptors. Defaults to the
                    ``schemas`` of the parent the actor is started under.
        """
        explicit = _event_schemas(events) if events is not None else None
        explicit_functions = _event_functions(explicit) if explicit is not None else None

        async def event_choice(scope: ActorScope) -> list[dict[str, Any]] | None:
            if explicit is not None:
                schemas, functions = explicit, explicit_functions
            else:
                schemas = _parent_event_schemas(scope.parent)
                functions = _event_functions(schemas)

            request = build_request(input_fn(scope.input), self.model)
            request["tools"] = [descriptor for descriptor, _ in functions.values()]
            completion = await self._complete(request)

            produced = []
            for call in iter_tool_calls(completion):
                if call.name not in functions:
                    raise EventMappingError(
                        f"Model chose unknown event '{call.name}' (choice {call.choice_index})",
                        event_type=call.name,
                    )
                event_type = functions[call.name][1]
                try:
                    arguments = parse_arguments(call)
                except ValueError as e:
                    raise EventMappingError(
                        f"Malformed arguments for event '{event_type}' (choice {call.choice_index}): {e}",
                        event_type=event_type,
                    ) from e

                event = {**arguments, EVENT_TYPE_KEY: event_type}
                errors = validation_errors(schemas[event_type], event)
                if errors:
                    raise EventMappingError(
                        f"Event '{event_type}' (choice {call.choice_index}) does not match its schema: {'; '.join(errors)}",
                        event_type=event_type,
                        errors=errors,
                    )
                produced.append(event)

            return await _dispatch(scope, produced, execute)

        return PromiseActorLogic(event_choice, name="event_choice")

    def from_tool_choice(
        self,
        input_fn: InputFn,
        tools: ToolRegistry | Mapping[str, Any],
        *,
        execute: bool = True,
    ) -> PromiseActorLogic:
        """Creates promise actor logic that lets the model choose and run tools.

        Every tool call becomes ``{"type": tool, "input": arguments, "output": result}``
        where ``result`` comes from the tool's nested one-shot logic.
        All calls are looked up and validated before any tool runs.
        """
        registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry.from_mapping(tools)

        async def tool_choice(scope: ActorScope) -> list[dict[str, Any]] | None:
            request = build_request(input_fn(scope.input), self.model)
            request["tools"] = registry.to_openai_schemas()
            completion = await self._complete(request)

            resolved = []
            for call in iter_tool_calls(completion):
                spec = registry.get(call.name)
                try:
                    arguments = parse_arguments(call)
                except ValueError as e:
                    raise EventMappingError(
                        f"Malformed arguments for tool '{spec.name}' (choice {call.choice_index}): {e}",
                        event_type=spec.name,
                    ) from e
                registry.validate_input(spec.name, arguments)
                resolved.append((spec, arguments))

            produced = []
            for spec, arguments in resolved:
                output = await registry.run(spec, arguments)
                produced.append({EVENT_TYPE_KEY: spec.name, "input": arguments, "output": output})

            return await _dispatch(scope, produced, execute)

        return PromiseActorLogic(tool_choice, name="tool_choice")


def create_adapter(model: str, transport: CompletionTransport) -> StatelyAgentAdapter:
    """Bind a model identifier to a shared completion transport."""
    return StatelyAgentAdapter(model=model, transport=transport)


def create_openai_adapter(
    client: Any = None, *, model: str = "gpt-4o", api_key: str | None = None, **kwargs
) -> StatelyAgentAdapter:
    """Adapter over the OpenAI chat completions API.

    Args:
        client: An existing ``openai.AsyncOpenAI`` client. If None, one is
                created from ``api_key`` and ``kwargs`` (the client falls back
                to OPENAI_API_KEY / OPENAI_BASE_URL).
        model: Model used when an input function returns a plain prompt.
    """
    from .llm.openai import OpenAITransport

    return create_adapter(model, OpenAITransport(client, api_key=api_key, **kwargs))


async def _dispatch(
    scope: ActorScope, events: list[dict[str, Any]], execute: bool
) -> list[dict[str, Any]] | None:
    if not events:
        return None
    if execute:
        if scope.parent is None:
            logger.debug("No parent to receive %d event(s)", len(events))
        # Every event must pass the parent's schemas before the first dispatch.
        parent_schemas = getattr(scope.parent, "schemas", None)
        if isinstance(parent_schemas, SchemaBundle):
            for event in events:
                parent_schemas.validate_event(event)
        for event in events:
            await scope.send_parent(event)
        if scope.cancelled:
            raise asyncio.CancelledError()
        logger.info("Dispatched %d event(s): %s", len(events), [e[EVENT_TYPE_KEY] for e in events])
    return events


def _event_schemas(events: SchemaBundle | Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    if isinstance(events, SchemaBundle):
        return events.events
    return create_event_schemas(events)


def _parent_event_schemas(parent: Any) -> dict[str, dict[str, Any]]:
    schemas = getattr(parent, "schemas", None)
    if not isinstance(schemas, SchemaBundle):
        raise EventMappingError(
            "No event schemas available: pass events= or start the actor under a parent with schemas"
        )
    return schemas.events


def _event_functions(
    schemas: Mapping[str, Mapping[str, Any]],
) -> dict[str, tuple[dict[str, Any], str]]:
    """Map sanitized function name -> (function descriptor, event name)."""
    functions: dict[str, tuple[dict[str, Any], str]] = {}
    for event_type, schema in schemas.items():
        function_name = safe_identifier(event_type)
        if function_name in functions:
            raise InvalidSchemaError(
                f"events '{functions[function_name][1]}' and '{event_type}' "
                f"share the function name '{function_name}'",
                field=event_type,
            )
        properties = {
            key: value
            for key, value in (schema.get("properties") or {}).items()
            if key != EVENT_TYPE_KEY
        }
        parameters: dict[str, Any] = {
            "type": "object",
            "properties": properties,
            "additionalProperties": False,
        }
        required = [key for key in schema.get("required", []) if key != EVENT_TYPE_KEY]
        if required:
            parameters["required"] = required
        descriptor = {
            "type": "function",
            "function": {
                "name": function_name,
                "description": schema.get("description", event_type),
                "parameters": parameters,
            },
        }
        functions[function_name] = (descriptor, event_type)
    return functions
