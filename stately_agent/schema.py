"""Canonical JSON schemas for machine context and events, plus type derivation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Never, NotRequired, TypedDict, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from .errors import EventMappingError, InvalidSchemaError

FIELD_KINDS = frozenset({"string", "number", "integer", "boolean", "object", "array", "null"})

# Descriptors without a "type" must use one of these instead
_COMPOSITE_KEYS = ("enum", "const", "anyOf", "oneOf", "allOf")

EVENT_TYPE_KEY = "type"

_KIND_TYPES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
    "null": type(None),
}

_KIND_SOURCE = {
    "string": "str",
    "number": "float",
    "integer": "int",
    "boolean": "bool",
    "array": "list",
    "object": "dict",
    "null": "None",
}

FieldDescriptors = Union[Mapping[str, Mapping[str, Any]], Iterable[tuple[str, Mapping[str, Any]]]]


@dataclass(frozen=True)
class SchemaTypes:
    """Value types derived from a schema bundle.

    Attributes:
        context: TypedDict describing the machine context.
        events: Union of one TypedDict per event (``Never`` when no events).
    """

    context: Any
    events: Any


@dataclass(frozen=True)
class SchemaBundle:
    """Canonical schemas handed to the state-machine configuration step.

    Built once by :func:`create_schemas` and treated as read-only afterwards.
    """

    context: dict[str, Any]
    events: dict[str, dict[str, Any]]
    types: SchemaTypes = field(compare=False, repr=False)

    def validate_context(self, value: Any) -> None:
        errors = validation_errors(self.context, value)
        if errors:
            raise InvalidSchemaError("; ".join(errors), field="context")

    def validate_event(self, event: Any) -> None:
        """Check an event object against its canonical schema."""
        if not isinstance(event, Mapping) or not isinstance(event.get(EVENT_TYPE_KEY), str):
            raise EventMappingError("Events must be mappings with a string 'type'")
        event_type = event[EVENT_TYPE_KEY]
        schema = self.events.get(event_type)
        if schema is None:
            raise EventMappingError(f"Unknown event type '{event_type}'", event_type=event_type)
        errors = validation_errors(schema, dict(event))
        if errors:
            raise EventMappingError(
                f"Event '{event_type}' does not match its schema: {'; '.join(errors)}",
                event_type=event_type,
                errors=errors,
            )


def validation_errors(schema: Mapping[str, Any], instance: Any) -> list[str]:
    """Validate ``instance`` against ``schema``, returning readable error strings."""
    validator = Draft202012Validator(schema)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(instance), key=lambda e: e.json_path)
    ]


def safe_identifier(name: str) -> str:
    """Convert an event or tool name to a valid Python identifier."""
    result = re.sub(r"[^a-zA-Z0-9_]", "_", name)
    if result and result[0].isdigit():
        result = "_" + result
    return result or "_event"


def create_schemas(context: FieldDescriptors, events: FieldDescriptors | None = None) -> SchemaBundle:
    """Build the canonical schema bundle from context fields and event descriptors.

    Args:
        context: Mapping of context field name -> field descriptor. Every
                 declared field becomes required and no other field is allowed.
        events: Mapping of event name -> payload descriptor. Each event is
                normalized by :func:`create_event_schemas`.

    Raises:
        InvalidSchemaError: if any descriptor is malformed or a name repeats.

    Example:
        schemas = create_schemas(
            context={"score": {"type": "number"}},
            events={"submit": {"type": "object", "properties": {}}},
        )
    """
    properties: dict[str, Any] = {}
    for name, descriptor in _pairs(context, "context"):
        _check_name(name, "context field")
        if name in properties:
            raise InvalidSchemaError("duplicate context field", field=name)
        descriptor = _plain(descriptor)
        _check_descriptor(descriptor, name)
        properties[name] = descriptor

    context_schema = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
        "required": list(properties),
    }
    event_schemas = create_event_schemas(events if events is not None else {})

    return SchemaBundle(
        context=context_schema,
        events=event_schemas,
        types=SchemaTypes(
            context=schema_to_type(context_schema, "Context"),
            events=_events_type(event_schemas),
        ),
    )


build_schemas = create_schemas


def create_event_schemas(events: FieldDescriptors) -> dict[str, dict[str, Any]]:
    """Wrap each event payload descriptor into a closed, discriminant-tagged object schema."""
    schemas: dict[str, dict[str, Any]] = {}
    for name, descriptor in _pairs(events, "event"):
        _check_name(name, "event")
        if name in schemas:
            raise InvalidSchemaError("duplicate event name", field=name)

        descriptor = _plain(descriptor)
        if isinstance(descriptor, dict):
            descriptor.setdefault("type", "object")
        _check_descriptor(descriptor, name)
        if descriptor["type"] != "object":
            raise InvalidSchemaError("event payloads must be object descriptors", field=name)

        payload = dict(descriptor.get("properties") or {})
        if EVENT_TYPE_KEY in payload:
            raise InvalidSchemaError(
                f"'{EVENT_TYPE_KEY}' is reserved for the event discriminant", field=name
            )
        required = [key for key in descriptor.get("required", []) if key != EVENT_TYPE_KEY]

        schema: dict[str, Any] = {
            "type": "object",
            "properties": {EVENT_TYPE_KEY: {"const": name}, **payload},
            "additionalProperties": False,
            "required": [EVENT_TYPE_KEY, *required],
        }
        if "description" in descriptor:
            schema["description"] = descriptor["description"]
        schemas[name] = schema
    return schemas


def _pairs(value: FieldDescriptors | None, what: str) -> list[tuple[Any, Any]]:
    if value is None:
        raise InvalidSchemaError(f"{what} descriptors are required")
    items = value.items() if isinstance(value, Mapping) else value
    try:
        return [(name, descriptor) for name, descriptor in items]
    except (TypeError, ValueError):
        raise InvalidSchemaError(
            f"{what} descriptors must be a mapping of name to descriptor"
        ) from None


def _check_name(name: Any, what: str) -> None:
    if not isinstance(name, str) or not name:
        raise InvalidSchemaError(f"{what} names must be non-empty strings", field=repr(name))


def _plain(value: Any) -> Any:
    """Deep-copy mappings and sequences into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _check_descriptor(descriptor: Any, path: str, root: bool = True) -> None:
    if not isinstance(descriptor, Mapping):
        raise InvalidSchemaError(
            f"expected a field descriptor mapping, got {type(descriptor).__name__}", field=path
        )

    kind = descriptor.get("type")
    if kind is None:
        if not any(key in descriptor for key in _COMPOSITE_KEYS):
            raise InvalidSchemaError("field descriptor needs a 'type'", field=path)
    else:
        kinds = kind if isinstance(kind, list) else [kind]
        unknown = [k for k in kinds if not isinstance(k, str) or k not in FIELD_KINDS]
        if not kinds or unknown:
            raise InvalidSchemaError(f"unknown field kind {kind!r}", field=path)

    properties = descriptor.get("properties")
    if properties is not None:
        if not isinstance(properties, Mapping):
            raise InvalidSchemaError("'properties' must be a mapping", field=path)
        for name, sub in properties.items():
            _check_descriptor(sub, f"{path}.{name}", root=False)
    items = descriptor.get("items")
    if isinstance(items, Mapping):
        _check_descriptor(items, f"{path}[]", root=False)

    if root:
        try:
            Draft202012Validator.check_schema(descriptor)
        except SchemaError as e:
            raise InvalidSchemaError(e.message, field=path) from e


# -- Type derivation --


def _class_name(name: str, suffix: str = "") -> str:
    parts = [p for p in re.split(r"[^0-9a-zA-Z]+", name) if p]
    result = "".join(p[0].upper() + p[1:] for p in parts) + suffix
    if not result or result[0].isdigit():
        result = "_" + result
    return result


def _annotation(descriptor: Mapping[str, Any], name: str) -> Any:
    if "const" in descriptor:
        return Literal[descriptor["const"]]
    if "enum" in descriptor:
        return Literal[tuple(descriptor["enum"])]
    kind = descriptor.get("type")
    if isinstance(kind, list):
        return Union[tuple(_annotation({**descriptor, "type": k}, name) for k in kind)]
    if kind == "object" and descriptor.get("properties"):
        return schema_to_type(descriptor, name)
    if kind == "array" and isinstance(descriptor.get("items"), Mapping):
        return list[_annotation(descriptor["items"], f"{name}Item")]
    return _KIND_TYPES.get(kind, Any)


def schema_to_type(schema: Mapping[str, Any], name: str) -> Any:
    """Derive a TypedDict class from an object schema.

    Required properties become required keys, the rest are ``NotRequired``.
    Nested object properties produce nested TypedDicts.
    """
    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}
    for key, sub in (schema.get("properties") or {}).items():
        annotation = _annotation(sub, _class_name(key, name))
        fields[key] = annotation if key in required else NotRequired[annotation]
    return TypedDict(name, fields)


def _events_type(event_schemas: Mapping[str, Mapping[str, Any]]) -> Any:
    members = tuple(
        schema_to_type(schema, _class_name(name, "Event")) for name, schema in event_schemas.items()
    )
    return Union[members] if members else Never


def check_type_pairing(tp: Any, schema: Mapping[str, Any]) -> None:
    """Raise InvalidSchemaError if a hand-written TypedDict drifted from its schema.

    Call at startup for every TypedDict declared alongside a schema bundle.
    """
    if not hasattr(tp, "__required_keys__"):
        raise InvalidSchemaError(f"{tp!r} is not a TypedDict")

    declared_required = set(tp.__required_keys__)
    declared = declared_required | set(tp.__optional_keys__)
    properties = set(schema.get("properties") or {})
    required = set(schema.get("required") or [])

    problems = []
    for key in sorted(properties - declared):
        problems.append(f"missing key '{key}'")
    for key in sorted(declared - properties):
        problems.append(f"undeclared key '{key}'")
    for key in sorted((required ^ declared_required) & properties & declared):
        problems.append(f"key '{key}' should be {'required' if key in required else 'optional'}")
    if problems:
        raise InvalidSchemaError("; ".join(problems), field=tp.__name__)


def _source_annotation(descriptor: Mapping[str, Any], name: str, lines: list[str]) -> str:
    if "const" in descriptor:
        return f"Literal[{descriptor['const']!r}]"
    if "enum" in descriptor:
        return f"Literal[{', '.join(repr(v) for v in descriptor['enum'])}]"
    kind = descriptor.get("type")
    if isinstance(kind, list):
        members = [_source_annotation({**descriptor, "type": k}, name, lines) for k in kind]
        return f"Union[{', '.join(members)}]"
    if kind == "object" and descriptor.get("properties"):
        _emit_typed_dict(descriptor, name, lines)
        return name
    if kind == "array" and isinstance(descriptor.get("items"), Mapping):
        return f"list[{_source_annotation(descriptor['items'], f'{name}Item', lines)}]"
    return _KIND_SOURCE.get(kind, "Any")


def _emit_typed_dict(schema: Mapping[str, Any], name: str, lines: list[str]) -> None:
    required = set(schema.get("required") or [])
    entries = []
    for key, sub in (schema.get("properties") or {}).items():
        annotation = _source_annotation(sub, _class_name(key, name), lines)
        if key not in required:
            annotation = f"NotRequired[{annotation}]"
        entries.append(f"    {key!r}: {annotation},")

    if entries:
        lines.append(f"{name} = TypedDict({name!r}, {{")
        lines.extend(entries)
        lines.append("})")
    else:
        lines.append(f"{name} = TypedDict({name!r}, {{}})")
    lines.append("")


def schemas_to_python(
    bundle: SchemaBundle, *, context_name: str = "Context", event_alias: str = "Event"
) -> str:
    """Generate Python source declaring TypedDicts for a schema bundle.

    The output is meant to be written to a module and checked in, so static
    type checkers see the same shapes the runtime schemas enforce.
    """
    lines: list[str] = []
    lines.append('"""Auto-generated schema types."""')
    lines.append("")
    lines.append("from typing import Any, Literal, NotRequired, TypedDict, Union")
    lines.append("")
    lines.append("")

    _emit_typed_dict(bundle.context, context_name, lines)

    event_names = []
    for event_name, schema in bundle.events.items():
        class_name = _class_name(event_name, "Event")
        _emit_typed_dict(schema, class_name, lines)
        event_names.append(class_name)

    if event_names:
        lines.append(f"{event_alias} = Union[{', '.join(event_names)}]")
    else:
        lines.append(f"{event_alias} = Any")
    lines.append("")
    return "\n".join(lines)
