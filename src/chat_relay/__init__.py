"""chat-relay: multi-provider tool-call orchestration for chat models."""

from chat_relay.config import RelayConfig, configure_logging, load_config
from chat_relay.core import StreamReconciler, ToolCallOrchestrator
from chat_relay.errors import (
    ChatRelayError,
    ConfigError,
    ProviderConnectionError,
    ProviderError,
    RefusedError,
)
from chat_relay.llm import ConversationBuilder, RetryScheduler
from chat_relay.relay import ChatRelay
from chat_relay.tools import FunctionDescriptor, FunctionExecutionSandbox, FunctionParameter
from chat_relay.types import FunctionCall, FunctionResult, Message, Role, Verbosity

__version__ = "0.1.0"

__all__ = [
    "ChatRelay",
    "ChatRelayError",
    "ConfigError",
    "ConversationBuilder",
    "FunctionCall",
    "FunctionDescriptor",
    "FunctionExecutionSandbox",
    "FunctionParameter",
    "FunctionResult",
    "Message",
    "ProviderConnectionError",
    "ProviderError",
    "RefusedError",
    "RelayConfig",
    "RetryScheduler",
    "Role",
    "StreamReconciler",
    "ToolCallOrchestrator",
    "Verbosity",
    "configure_logging",
    "load_config",
]
