"""Dynamic code sandbox: compile, isolate and run untrusted fragments."""

from gcp_broker.sandbox.capabilities import (
    CapabilityEntry,
    CapabilityRegistry,
    default_registry,
)
from gcp_broker.sandbox.compiler import CompiledFragment, compile_fragment
from gcp_broker.sandbox.engine import ExecutionOutcome, ExecutionState, SandboxEngine
from gcp_broker.sandbox.errors import (
    ExecutionTimeoutError,
    FaultedExecutionError,
    LoweringError,
    MalformedSourceError,
    MissingResultError,
    NonSerializableResultError,
    NotFoundError,
    PreconditionError,
    SandboxError,
)
from gcp_broker.sandbox.isolation import ConsoleSink, Deadline, ExecutionContext
from gcp_broker.sandbox.serialization import to_json_value

__all__ = [
    "CapabilityEntry",
    "CapabilityRegistry",
    "CompiledFragment",
    "ConsoleSink",
    "Deadline",
    "ExecutionContext",
    "ExecutionOutcome",
    "ExecutionState",
    "ExecutionTimeoutError",
    "FaultedExecutionError",
    "LoweringError",
    "MalformedSourceError",
    "MissingResultError",
    "NonSerializableResultError",
    "NotFoundError",
    "PreconditionError",
    "SandboxError",
    "SandboxEngine",
    "compile_fragment",
    "default_registry",
    "to_json_value",
]
