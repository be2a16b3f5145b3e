"""stately-agent: language-model actors for finite-state agents.

Declare context and event shapes once, get canonical JSON schemas and
derived types, then turn chat completions, completion streams and
model tool choice into actors a state machine can invoke.
"""

__version__ = "0.1.0"

from .actors import (
    ActorRef,
    ActorScope,
    EventTarget,
    ObservableActorLogic,
    PromiseActorLogic,
    StreamRef,
    from_promise,
)
from .adapter import StatelyAgentAdapter, create_adapter, create_openai_adapter
from .errors import (
    CompletionRequestError,
    EventMappingError,
    InvalidSchemaError,
    InvalidToolInputError,
    StatelyAgentError,
    StreamError,
    UnknownToolError,
)
from .llm.transport import ChunkStream, CompletionTransport
from .machine import MachineHost
from .schema import (
    SchemaBundle,
    SchemaTypes,
    build_schemas,
    check_type_pairing,
    create_event_schemas,
    create_schemas,
    schema_to_type,
    schemas_to_python,
)
from .tools import ToolRegistry, ToolSpec

__all__ = [
    # Schemas
    "SchemaBundle",
    "SchemaTypes",
    "create_schemas",
    "build_schemas",
    "create_event_schemas",
    "schema_to_type",
    "check_type_pairing",
    "schemas_to_python",
    # Adapter
    "StatelyAgentAdapter",
    "create_adapter",
    "create_openai_adapter",
    # Actors
    "ActorRef",
    "ActorScope",
    "EventTarget",
    "ObservableActorLogic",
    "PromiseActorLogic",
    "StreamRef",
    "from_promise",
    # Transport
    "ChunkStream",
    "CompletionTransport",
    # Tools
    "ToolSpec",
    "ToolRegistry",
    # Machine host
    "MachineHost",
    # Errors
    "StatelyAgentError",
    "InvalidSchemaError",
    "CompletionRequestError",
    "StreamError",
    "EventMappingError",
    "InvalidToolInputError",
    "UnknownToolError",
]
