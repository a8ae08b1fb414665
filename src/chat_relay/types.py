"""Shared data types for chat-relay."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from chat_relay.tools.base import FunctionDescriptor


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(enum.Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION_RESULT = "function_result"


class Verbosity(enum.Enum):
    """Quality/length hint, mapped by each provider adapter to its own knobs."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def coerce(cls, value: Verbosity | str | None) -> Verbosity:
        if value is None:
            return cls.MEDIUM
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


@dataclass(frozen=True)
class FunctionCall:
    """A function invocation proposed by the model.

    ``arguments`` is the raw serialized payload exactly as the provider sent
    it; it is parsed only inside the sandbox.
    """

    id: str
    name: str
    arguments: str = "{}"

    @property
    def signature(self) -> str:
        return call_signature(self)


def call_signature(call: FunctionCall) -> str:
    """Return the dedup key for *call*: name plus raw serialized arguments."""
    return f"{call.name}:{call.arguments}"


class FunctionErrorKind(enum.Enum):
    """Why a function result carries an error flag."""

    MALFORMED_ARGUMENTS = "malformed_arguments"
    NOT_FOUND = "not_found"
    EXECUTION_FAILED = "execution_failed"
    DUPLICATE_CALL = "duplicate_call"


@dataclass(frozen=True)
class FunctionResult:
    """Outcome of one function call, success or failure."""

    call_id: str
    name: str
    output: str
    is_error: bool = False
    error_message: str = ""
    error_kind: FunctionErrorKind | None = None


@dataclass(frozen=True)
class Message:
    """One immutable entry of a conversation history."""

    role: Role
    content: str | None = None
    function_calls: tuple[FunctionCall, ...] = ()
    call_id: str = ""
    name: str = ""
    is_error: bool = False
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(
                self, "id", f"{self.role.value}-{uuid.uuid4().hex[:12]}",
            )
        if not isinstance(self.function_calls, tuple):
            object.__setattr__(self, "function_calls", tuple(self.function_calls))

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=text)

    @classmethod
    def assistant(
        cls,
        text: str | None = None,
        function_calls: list[FunctionCall] | tuple[FunctionCall, ...] = (),
    ) -> Message:
        return cls(
            role=Role.ASSISTANT, content=text, function_calls=tuple(function_calls),
        )

    @classmethod
    def function_result(cls, result: FunctionResult) -> Message:
        return cls(
            role=Role.FUNCTION_RESULT,
            content=result.output,
            call_id=result.call_id,
            name=result.name,
            is_error=result.is_error,
        )

    @property
    def has_function_calls(self) -> bool:
        return len(self.function_calls) > 0


# ---------------------------------------------------------------------------
# Model request / response types
# ---------------------------------------------------------------------------

@dataclass
class ModelRequest:
    """Provider-agnostic description of one model invocation."""

    messages: list[Message] = field(default_factory=list)
    system_prompt: str | None = None
    verbosity: Verbosity = Verbosity.MEDIUM
    functions: list[FunctionDescriptor] = field(default_factory=list)
    force_function_call: bool = False
    response_schema: dict[str, Any] | None = None


@dataclass
class ModelOutput:
    """Normalized non-streaming model response.

    ``valid`` is False when the provider payload carried no recognizable
    output at all.
    """

    text: str | None = None
    function_calls: list[FunctionCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)
    valid: bool = True

    @property
    def has_function_calls(self) -> bool:
        return len(self.function_calls) > 0


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextDelta:
    """A fragment of narrative text."""

    text: str


@dataclass(frozen=True)
class FunctionCallDelta:
    """A fragment of a streamed function call.

    Fragments sharing ``key`` belong to the same call.  When ``complete`` is
    set, a non-empty ``arguments`` replaces whatever was accumulated.
    """

    key: str
    name: str = ""
    call_id: str = ""
    arguments: str = ""
    complete: bool = False


@dataclass(frozen=True)
class SegmentEnd:
    """The provider finished the current stream segment."""


StreamEvent = Union[TextDelta, FunctionCallDelta, SegmentEnd]


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by the orchestration core."""

    ORCHESTRATION_STARTED = "orchestration.started"
    ORCHESTRATION_DONE = "orchestration.done"

    MODEL_REQUEST = "model.request"
    MODEL_RESPONSE = "model.response"

    FUNCTION_EXECUTING = "function.executing"
    FUNCTION_EXECUTED = "function.executed"
    FUNCTION_ERROR = "function.error"
    FUNCTION_DUPLICATE = "function.duplicate"

    LOOP_DETECTED = "loop.detected"
    ROUNDS_EXHAUSTED = "rounds.exhausted"

    STREAM_SEGMENT_STARTED = "stream.segment_started"
    STREAM_SEGMENT_ENDED = "stream.segment_ended"
    STREAM_INTERRUPTED = "stream.interrupted"


@dataclass
class RelayEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
