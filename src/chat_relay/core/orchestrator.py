"""ToolCallOrchestrator: the multi-round tool-call loop.

    request → inspect → execute → request ... → done

Each run owns a :class:`RoundState`.  The loop ends on a text-only reply,
a detected single-call loop, or the round cap.  Function failures never
stop the loop; refusals and unclassified provider errors propagate.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any

from chat_relay.config import OrchestrationSpec
from chat_relay.core.executor import RoundExecutor
from chat_relay.core.state import OrchestratorState, RoundState
from chat_relay.events.bus import EventBus
from chat_relay.llm.retry import RetryScheduler
from chat_relay.llm.stream_parser import ensure_unique_call_ids
from chat_relay.providers.base import ProviderAdapter
from chat_relay.tools.sandbox import FunctionExecutionSandbox
from chat_relay.types import (
    EventType,
    FunctionResult,
    Message,
    ModelOutput,
    ModelRequest,
)

_logger = logging.getLogger(__name__)

ROUNDS_EXHAUSTED_MESSAGE = (
    "I've reached the maximum number of tool execution rounds. The "
    "conversation may be too complex or there might be an issue with the "
    "tool calls. Please try rephrasing your request or breaking it into "
    "smaller parts."
)
INVALID_RESPONSE_MESSAGE = "Sorry, we received an invalid response from the API."
LOOP_DETECTED_MESSAGE = (
    "I seem to be repeating the same tool call without making progress, so "
    "I've stopped here. Please try rephrasing your request."
)


@dataclass
class OrchestrationOutcome:
    """Final text plus how the run ended."""

    text: str
    state: OrchestratorState
    rounds: int
    results: list[FunctionResult] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)


def round_request(request: ModelRequest, state: RoundState) -> ModelRequest:
    """The request for the current round of *state*."""
    return dataclasses.replace(
        request,
        messages=list(state.inputs),
        force_function_call=state.forcing,
    )


class ToolCallOrchestrator:
    """Drives model invocations interleaved with function executions.

    Parameters
    ----------
    adapter:
        Provider adapter used for every model invocation.
    scheduler:
        Retry scheduler wrapping each invocation.
    sandbox:
        Function sandbox (a default one is created if omitted).
    event_bus:
        Event bus for observers (optional).
    spec:
        Round cap, dedup window and loop limit.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        scheduler: RetryScheduler | None = None,
        sandbox: FunctionExecutionSandbox | None = None,
        event_bus: EventBus | None = None,
        spec: OrchestrationSpec | None = None,
    ) -> None:
        self._adapter = adapter
        self._scheduler = scheduler or RetryScheduler()
        self._event_bus = event_bus or EventBus()
        self.spec = spec or OrchestrationSpec()
        self._executor = RoundExecutor(
            sandbox, self._event_bus, concurrent=self.spec.concurrent_functions,
        )

    async def run(self, request: ModelRequest) -> str:
        """Run the loop and return the final text."""
        outcome = await self.run_detailed(request)
        return outcome.text

    async def run_detailed(self, request: ModelRequest) -> OrchestrationOutcome:
        state = RoundState.from_spec(
            request.messages, self.spec, force_tool_use=request.force_function_call,
        )
        return await self.drive(request, state)

    async def drive(self, request: ModelRequest, state: RoundState) -> OrchestrationOutcome:
        """Run the loop from an existing *state*.

        The stream reconciler uses this to continue a run without streaming.
        """
        await self._emit(EventType.ORCHESTRATION_STARTED, {
            "round": state.round_index,
            "functions": [f.name for f in request.functions],
        })
        results: list[FunctionResult] = []

        while True:
            if state.exhausted:
                _logger.warning("Reached maximum tool rounds (%d)", state.max_rounds)
                await self._emit(EventType.ROUNDS_EXHAUSTED, {"rounds": state.round_index})
                return await self._finish(
                    ROUNDS_EXHAUSTED_MESSAGE, OrchestratorState.EXHAUSTED, state, results,
                )

            # Requesting
            state.phase = OrchestratorState.REQUESTING
            current = round_request(request, state)
            await self._emit(EventType.MODEL_REQUEST, {
                "round": state.round_index,
                "messages": len(current.messages),
                "forced": current.force_function_call,
            })
            output: ModelOutput = await self._scheduler.execute(
                lambda: self._adapter.complete(current)
            )

            # Inspecting
            state.phase = OrchestratorState.INSPECTING
            calls = ensure_unique_call_ids(
                output.function_calls, prefix=f"call_{state.round_index}",
            )
            await self._emit(EventType.MODEL_RESPONSE, {
                "round": state.round_index,
                "model": output.model,
                "function_calls": len(calls),
                "content_length": len(output.text or ""),
            })

            if not calls:
                if output.valid and output.text:
                    state.append(Message.assistant(output.text))
                    return await self._finish(
                        output.text, OrchestratorState.DONE, state, results,
                    )
                _logger.warning("Model returned neither text nor function calls")
                return await self._finish(
                    INVALID_RESPONSE_MESSAGE, OrchestratorState.DONE, state, results,
                )

            # Executing
            state.phase = OrchestratorState.EXECUTING
            _logger.info(
                "Round %d: executing %d function call(s)", state.round_index, len(calls),
            )
            results.extend(
                await self._executor.run_round(
                    state, calls, request.functions, text=output.text,
                )
            )

            if state.observe_round(calls):
                _logger.warning(
                    "Loop detected: %s repeated %d times",
                    state.last_signature, state.repeat_count,
                )
                await self._emit(EventType.LOOP_DETECTED, {
                    "signature": state.last_signature,
                    "round": state.round_index,
                })
                return await self._finish(
                    LOOP_DETECTED_MESSAGE, OrchestratorState.LOOP_DETECTED, state, results,
                )

            state.advance()

    async def _finish(
        self,
        text: str,
        end_state: OrchestratorState,
        state: RoundState,
        results: list[FunctionResult],
    ) -> OrchestrationOutcome:
        state.phase = end_state
        await self._emit(EventType.ORCHESTRATION_DONE, {
            "state": end_state.value,
            "rounds": state.round_index,
            "response": text[:500],
        })
        return OrchestrationOutcome(
            text=text,
            state=end_state,
            rounds=state.round_index,
            results=results,
            messages=list(state.inputs),
        )

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.publish(event_type, **data)
