"""Function descriptors, registry and execution sandbox."""

from chat_relay.tools.base import FunctionDescriptor, FunctionParameter, build_input_schema
from chat_relay.tools.registry import FunctionRegistry
from chat_relay.tools.sandbox import FunctionExecutionSandbox

__all__ = [
    "FunctionDescriptor",
    "FunctionExecutionSandbox",
    "FunctionParameter",
    "FunctionRegistry",
    "build_input_schema",
]
