"""Retry scheduling, conversation assembly and stream parsing."""

from chat_relay.llm.conversation import ConversationBuilder
from chat_relay.llm.retry import ErrorClass, RetryScheduler, classify_error
from chat_relay.llm.stream_parser import PendingCallBuffer, ReconcilerState, StreamAccumulator

__all__ = [
    "ConversationBuilder",
    "ErrorClass",
    "PendingCallBuffer",
    "ReconcilerState",
    "RetryScheduler",
    "StreamAccumulator",
    "classify_error",
]
