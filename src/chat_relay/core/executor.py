"""RoundExecutor: runs one round's function calls.

Shared by the non-streaming orchestrator and the stream reconciler so both
paths apply the same dedup and ordering rules.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from chat_relay.core.state import RoundState
from chat_relay.events.bus import EventBus
from chat_relay.tools.sandbox import Descriptors, FunctionExecutionSandbox, duplicate_result
from chat_relay.types import EventType, FunctionCall, FunctionResult, Message

_logger = logging.getLogger(__name__)


class RoundExecutor:
    """Executes a round of function calls against a :class:`RoundState`.

    Usage::

        executor = RoundExecutor(sandbox, event_bus)
        results = await executor.run_round(state, calls, functions)
    """

    def __init__(
        self,
        sandbox: FunctionExecutionSandbox | None = None,
        event_bus: EventBus | None = None,
        concurrent: bool = True,
    ) -> None:
        self._sandbox = sandbox or FunctionExecutionSandbox()
        self._event_bus = event_bus
        self._concurrent = concurrent

    async def run_round(
        self,
        state: RoundState,
        calls: list[FunctionCall],
        descriptors: Descriptors | None,
        text: str | None = None,
    ) -> list[FunctionResult]:
        """Append the assistant turn, execute *calls*, append their results.

        Results are appended in call order regardless of completion order.
        """
        state.append(Message.assistant(text or None, calls))
        results = await self.execute(state, calls, descriptors)
        for result in results:
            state.append(Message.function_result(result))
        return results

    async def execute(
        self,
        state: RoundState,
        calls: list[FunctionCall],
        descriptors: Descriptors | None,
    ) -> list[FunctionResult]:
        """Execute *calls*, synthesizing duplicate results from *state*.

        Dedup decisions are made sequentially in call order before any
        function runs, so two identical calls in one round execute once.
        Only successful calls are recorded in *state*; a failed call may be
        retried with the same arguments in a later round.
        """
        slots: list[FunctionResult | None] = [None] * len(calls)
        to_run: list[tuple[int, FunctionCall]] = []
        in_round: set[str] = set()

        for index, call in enumerate(calls):
            signature = call.signature
            if state.has_executed(signature) or signature in in_round:
                _logger.info("Skipping duplicate call %s", signature[:200])
                slots[index] = duplicate_result(call)
                await self._emit(EventType.FUNCTION_DUPLICATE, {
                    "function": call.name,
                    "call_id": call.id,
                })
                continue
            in_round.add(signature)
            to_run.append((index, call))

        if self._concurrent and len(to_run) > 1:
            results = await asyncio.gather(
                *[self._run_one(call, descriptors) for _, call in to_run]
            )
        else:
            results = [await self._run_one(call, descriptors) for _, call in to_run]

        for (index, call), result in zip(to_run, results):
            slots[index] = result
            if not result.is_error:
                state.record(call.signature)

        return [r for r in slots if r is not None]

    async def _run_one(
        self, call: FunctionCall, descriptors: Descriptors | None,
    ) -> FunctionResult:
        await self._emit(EventType.FUNCTION_EXECUTING, {
            "function": call.name,
            "call_id": call.id,
            "arguments": call.arguments,
        })
        result = await self._sandbox.run(call, descriptors)
        if result.is_error:
            await self._emit(EventType.FUNCTION_ERROR, {
                "function": call.name,
                "call_id": call.id,
                "error": result.error_message,
                "kind": result.error_kind.value if result.error_kind else "",
            })
        else:
            await self._emit(EventType.FUNCTION_EXECUTED, {
                "function": call.name,
                "call_id": call.id,
                "output_length": len(result.output),
            })
        return result

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, **data)
