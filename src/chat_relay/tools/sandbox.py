"""Run one model-proposed function call and normalize the outcome.

``FunctionExecutionSandbox.run`` never raises for a function's own
failures: malformed arguments, unknown names, validation errors and
execution errors all come back as error-flagged :class:`FunctionResult`
values so the orchestration loop can keep moving.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Union

from pydantic import BaseModel

from chat_relay.tools.base import FunctionDescriptor
from chat_relay.tools.registry import FunctionRegistry
from chat_relay.types import FunctionCall, FunctionErrorKind, FunctionResult

_logger = logging.getLogger(__name__)

Descriptors = Union[
    FunctionRegistry,
    Mapping[str, FunctionDescriptor],
    Iterable[FunctionDescriptor],
]

DUPLICATE_CALL_MESSAGE = "Function already executed with same parameters"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def error_result(
    call: FunctionCall,
    kind: FunctionErrorKind,
    message: str,
    timestamp: datetime | None = None,
) -> FunctionResult:
    """Build an error-flagged result whose output is a JSON error envelope."""
    envelope = {
        "error": True,
        "message": message,
        "function_name": call.name,
        "timestamp": (timestamp or _utcnow()).isoformat(),
    }
    return FunctionResult(
        call_id=call.id,
        name=call.name,
        output=json.dumps(envelope),
        is_error=True,
        error_message=message,
        error_kind=kind,
    )


def duplicate_result(call: FunctionCall) -> FunctionResult:
    return error_result(call, FunctionErrorKind.DUPLICATE_CALL, DUPLICATE_CALL_MESSAGE)


def _serialize(value: Any) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, default=str)


def _lookup(descriptors: Descriptors | None, name: str) -> FunctionDescriptor | None:
    if descriptors is None:
        return None
    if isinstance(descriptors, FunctionRegistry):
        return descriptors.get(name)
    if isinstance(descriptors, Mapping):
        return descriptors.get(name)
    for d in descriptors:
        if d.name == name:
            return d
    return None


class FunctionExecutionSandbox:
    """Parse, look up, validate and execute a single function call."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow

    async def run(
        self,
        call: FunctionCall,
        descriptors: Descriptors | None,
    ) -> FunctionResult:
        # 1. Parse
        raw = call.arguments if call.arguments and call.arguments.strip() else "{}"
        try:
            arguments = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as e:
            _logger.warning("Malformed arguments for %s: %s", call.name, e)
            return self._error(
                call,
                FunctionErrorKind.MALFORMED_ARGUMENTS,
                f"Failed to parse function call arguments: {e}",
            )
        if not isinstance(arguments, dict):
            return self._error(
                call,
                FunctionErrorKind.MALFORMED_ARGUMENTS,
                "Failed to parse function call arguments: expected a JSON object, "
                f"got {type(arguments).__name__}",
            )

        # 2. Look up
        descriptor = _lookup(descriptors, call.name)
        if descriptor is None:
            _logger.warning("Model called unknown function: %s", call.name)
            return self._error(
                call,
                FunctionErrorKind.NOT_FOUND,
                f"Function {call.name} not found in provided functions",
            )

        # 3. Validate and execute
        try:
            validated = descriptor.validate(arguments)
            value = await descriptor.invoke(validated)
            output = _serialize(value)
        except Exception as e:
            _logger.warning("Function %s failed: %s: %s", call.name, type(e).__name__, e)
            return self._error(
                call,
                FunctionErrorKind.EXECUTION_FAILED,
                f"Function execution failed: {e}",
            )

        return FunctionResult(call_id=call.id, name=call.name, output=output)

    def _error(
        self, call: FunctionCall, kind: FunctionErrorKind, message: str,
    ) -> FunctionResult:
        return error_result(call, kind, message, self._clock())
