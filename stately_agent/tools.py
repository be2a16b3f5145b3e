"""Tool registry: function-calling descriptors plus a name-indexed dispatch table."""

from __future__ import annotations

import copy
import inspect
import re
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from .actors import EventTarget, ObservableActorLogic, PromiseActorLogic
from .errors import InvalidSchemaError, InvalidToolInputError, UnknownToolError
from .schema import validation_errors

# Function names accepted by the chat completions API
_TOOL_NAME = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

_PY_TO_JSON = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass
class ToolSpec:
    """A named tool the model may choose.

    Attributes:
        name: Unique name within one registry (sent to the model).
        description: Human-readable purpose, sent to the model.
        src: Nested actor logic. ``PromiseActorLogic`` and plain (sync or
             async) callables are invoked; anything else is only reported.
        input_schema: JSON schema for the call arguments (object kind).
    """

    name: str
    description: str
    src: Any = None
    input_schema: dict[str, Any] = field(default_factory=_empty_object_schema)

    @property
    def is_one_shot(self) -> bool:
        if isinstance(self.src, ObservableActorLogic):
            return False
        return isinstance(self.src, PromiseActorLogic) or callable(self.src)

    def to_openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

    @classmethod
    def from_callable(
        cls,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> ToolSpec:
        """Build a spec from a function, inferring the input schema from its signature."""
        tool_name = name or func.__name__
        tool_desc = description or inspect.getdoc(func) or f"Tool: {tool_name}"
        return cls(
            name=tool_name,
            description=tool_desc,
            src=func,
            input_schema=input_schema or _signature_schema(func),
        )


def _signature_schema(func: Callable) -> dict[str, Any]:
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for param_name, param in inspect.signature(func).parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        kind = _PY_TO_JSON.get(hints.get(param_name))
        properties[param_name] = {"type": kind} if kind else {}
        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


class ToolRegistry:
    """Name-indexed tools, validated when they are registered."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    @classmethod
    def from_mapping(cls, tools: Mapping[str, Any]) -> ToolRegistry:
        """Build a registry from ``{name: {"description", "src", "input_schema"}}``.

        Values may also be ToolSpec instances or plain callables.
        ``inputSchema`` is accepted as an alias of ``input_schema``.
        """
        registry = cls()
        for name, tool in tools.items():
            if isinstance(tool, ToolSpec):
                registry.register(tool, name=name)
            elif isinstance(tool, Mapping):
                schema = tool.get("input_schema", tool.get("inputSchema"))
                if schema is None:
                    schema = _empty_object_schema()
                registry.register(
                    ToolSpec(
                        name=name,
                        description=tool.get("description", ""),
                        src=tool.get("src"),
                        input_schema=schema,
                    )
                )
            elif callable(tool):
                registry.register(tool, name=name)
            else:
                raise InvalidSchemaError(
                    f"expected a tool mapping, ToolSpec or callable, got {type(tool).__name__}",
                    field=name,
                )
        return registry

    def register(
        self,
        tool: ToolSpec | Callable,
        *,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> ToolSpec:
        """Register a ToolSpec or a callable. Raises InvalidSchemaError on bad specs."""
        if isinstance(tool, ToolSpec):
            spec = ToolSpec(
                name=name or tool.name,
                description=description or tool.description,
                src=tool.src,
                input_schema=input_schema or tool.input_schema,
            )
        else:
            spec = ToolSpec.from_callable(
                tool, name=name, description=description, input_schema=input_schema
            )

        if not isinstance(spec.name, str) or not _TOOL_NAME.match(spec.name):
            raise InvalidSchemaError(
                "tool names must match [a-zA-Z0-9_-] and be at most 64 characters",
                field=repr(spec.name),
            )
        if spec.name in self._tools:
            raise InvalidSchemaError("duplicate tool name", field=spec.name)
        if not isinstance(spec.description, str):
            raise InvalidSchemaError("tool description must be a string", field=spec.name)
        spec.input_schema = _check_input_schema(spec.input_schema, spec.name)

        self._tools[spec.name] = spec
        return spec

    def get(self, name: str) -> ToolSpec:
        """Look up a tool. Raises UnknownToolError if it is not registered."""
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name, available=list(self._tools))
        return spec

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def to_openai_schemas(self) -> list[dict[str, Any]]:
        """Function-calling descriptors, in registration order."""
        return [spec.to_openai_schema() for spec in self._tools.values()]

    def validate_input(self, name: str, arguments: Any) -> ToolSpec:
        spec = self.get(name)
        errors = validation_errors(spec.input_schema, arguments)
        if errors:
            raise InvalidToolInputError(name, arguments, errors)
        return spec

    async def invoke(
        self, name: str, arguments: dict[str, Any], parent: EventTarget | None = None
    ) -> Any:
        """Validate arguments and run the tool's nested logic if it is one-shot."""
        spec = self.validate_input(name, arguments)
        return await self.run(spec, arguments, parent=parent)

    @staticmethod
    async def run(
        spec: ToolSpec, arguments: dict[str, Any], parent: EventTarget | None = None
    ) -> Any:
        """Run already-validated arguments through the tool's nested logic.

        PromiseActorLogic receives the arguments dict as its input; plain
        callables receive them as keyword arguments. Returns None when the
        logic is not one-shot.
        """
        src = spec.src
        if isinstance(src, PromiseActorLogic):
            return await src.run(arguments, parent=parent)
        if not spec.is_one_shot:
            return None
        result = src(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def _check_input_schema(schema: Any, tool_name: str) -> dict[str, Any]:
    if not isinstance(schema, Mapping):
        raise InvalidSchemaError("input schema must be a mapping", field=tool_name)
    schema = copy.deepcopy(dict(schema))
    if schema.get("type", "object") != "object":
        raise InvalidSchemaError("input schema must describe an object", field=tool_name)
    schema.setdefault("type", "object")
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        raise InvalidSchemaError(e.message, field=tool_name) from e
    return schema
