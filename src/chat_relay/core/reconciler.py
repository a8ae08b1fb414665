"""StreamReconciler: clean narrative text out of a streaming tool loop.

A run is a series of segments.  Each segment is one streaming call; text
deltas pass through a :class:`StreamAccumulator` that suppresses leaked
payload fragments, and function-call deltas are collected in a
:class:`PendingCallBuffer`.  When a segment ends with calls, they are
executed with the same rules as the non-streaming loop and a new segment
is opened.  A segment without calls ends the stream.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable

from chat_relay.config import OrchestrationSpec, StreamSpec
from chat_relay.core.executor import RoundExecutor
from chat_relay.core.orchestrator import (
    INVALID_RESPONSE_MESSAGE,
    LOOP_DETECTED_MESSAGE,
    ROUNDS_EXHAUSTED_MESSAGE,
    ToolCallOrchestrator,
    round_request,
)
from chat_relay.core.state import RoundState
from chat_relay.errors import RefusedError, StreamingUnsupportedError
from chat_relay.events.bus import EventBus
from chat_relay.llm.retry import RetryScheduler
from chat_relay.llm.stream_parser import PendingCallBuffer, ReconcilerState, StreamAccumulator
from chat_relay.providers.base import ProviderAdapter
from chat_relay.tools.sandbox import FunctionExecutionSandbox
from chat_relay.types import (
    EventType,
    FunctionCallDelta,
    ModelRequest,
    SegmentEnd,
    StreamEvent,
    TextDelta,
)

_logger = logging.getLogger(__name__)

STREAM_INTERRUPTED_MESSAGE = (
    "\n\nSorry, it looks like the response was interrupted. Please try again."
)

_WORD_RE = re.compile(r"\s*\S+\s*|\s+")


def split_words(text: str) -> list[str]:
    """Split *text* into word chunks that concatenate back to *text*."""
    return _WORD_RE.findall(text)


@dataclass
class _StreamRun:
    """Per-call bookkeeping for one streamed run."""

    state: RoundState
    phase: ReconcilerState = ReconcilerState.IDLE
    emitted_any: bool = False


class StreamReconciler:
    """Yields narrative text increments while running tool rounds mid-stream.

    Parameters
    ----------
    adapter:
        Provider adapter; its ``open_stream`` is called once per segment.
    scheduler:
        Retry scheduler wrapping each segment open.
    sandbox:
        Function sandbox shared with the fallback orchestrator.
    event_bus:
        Event bus for observers (optional).
    orchestration:
        Round cap, dedup window and loop limit.
    stream:
        Payload detection window and fallback chunk delay.
    sleep:
        Awaitable sleep for simulated streaming.  Defaults to ``asyncio.sleep``.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        scheduler: RetryScheduler | None = None,
        sandbox: FunctionExecutionSandbox | None = None,
        event_bus: EventBus | None = None,
        orchestration: OrchestrationSpec | None = None,
        stream: StreamSpec | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._adapter = adapter
        self._scheduler = scheduler or RetryScheduler()
        self._sandbox = sandbox or FunctionExecutionSandbox()
        self._event_bus = event_bus or EventBus()
        self.orchestration = orchestration or OrchestrationSpec()
        self.stream_spec = stream or StreamSpec()
        self._sleep = sleep
        self._executor = RoundExecutor(
            self._sandbox, self._event_bus,
            concurrent=self.orchestration.concurrent_functions,
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        """Yield text increments for *request*.

        Refusals propagate.  Any other failure yields one apology chunk and
        ends the stream.  If the provider rejects streaming, the run is
        finished without streaming and the final text is replayed in word
        chunks.
        """
        run = _StreamRun(
            state=RoundState.from_spec(
                request.messages, self.orchestration,
                force_tool_use=request.force_function_call,
            )
        )
        fallback = False
        segments = self._segments(run, request)
        try:
            async for chunk in segments:
                yield chunk
        except StreamingUnsupportedError as e:
            _logger.warning("Streaming unsupported (%s), simulating it", e)
            fallback = True
        except RefusedError:
            raise
        except Exception as e:
            await self._interrupted(run, e)
            yield STREAM_INTERRUPTED_MESSAGE
        finally:
            await segments.aclose()

        if not fallback:
            return

        simulated = self._simulate(request, run.state)
        try:
            async for chunk in simulated:
                yield chunk
        except RefusedError:
            raise
        except Exception as e:
            await self._interrupted(run, e)
            yield STREAM_INTERRUPTED_MESSAGE
        finally:
            await simulated.aclose()

    async def _segments(
        self, run: _StreamRun, request: ModelRequest,
    ) -> AsyncGenerator[str, None]:
        state = run.state
        while True:
            if state.exhausted:
                _logger.warning(
                    "Reached maximum tool rounds (%d) while streaming", state.max_rounds,
                )
                await self._emit(EventType.ROUNDS_EXHAUSTED, {"rounds": state.round_index})
                run.phase = ReconcilerState.TERMINATED
                yield ROUNDS_EXHAUSTED_MESSAGE
                return

            current = round_request(request, state)
            accumulator = StreamAccumulator(self.stream_spec.payload_quote_window)
            pending = PendingCallBuffer()
            narrative: list[str] = []

            await self._emit(EventType.STREAM_SEGMENT_STARTED, {
                "round": state.round_index,
                "forced": current.force_function_call,
            })
            run.phase = ReconcilerState.IDLE
            events = await self._scheduler.execute(
                lambda: self._adapter.open_stream(current)
            )
            try:
                async for event in events:
                    if isinstance(event, TextDelta):
                        text = accumulator.feed(event.text)
                        run.phase = accumulator.state
                        if text:
                            narrative.append(text)
                            run.emitted_any = True
                            yield text
                    elif isinstance(event, FunctionCallDelta):
                        pending.feed(event)
                    elif isinstance(event, SegmentEnd):
                        break
            finally:
                await _close(events)

            tail = accumulator.flush()
            if tail:
                narrative.append(tail)
                run.emitted_any = True
                yield tail

            calls = pending.finalize(id_prefix=f"call_{state.round_index}")
            await self._emit(EventType.STREAM_SEGMENT_ENDED, {
                "round": state.round_index,
                "function_calls": len(calls),
                "suppressed_payloads": len(accumulator.suppressed),
            })

            if not calls:
                run.phase = ReconcilerState.TERMINATED
                if not run.emitted_any:
                    _logger.warning("Stream produced neither text nor function calls")
                    yield INVALID_RESPONSE_MESSAGE
                return

            run.phase = ReconcilerState.AWAITING_TOOL_ROUND
            _logger.info(
                "Segment %d: executing %d function call(s)", state.round_index, len(calls),
            )
            await self._executor.run_round(
                state, calls, request.functions, text="".join(narrative) or None,
            )
            if state.observe_round(calls):
                _logger.warning("Loop detected while streaming: %s", state.last_signature)
                await self._emit(EventType.LOOP_DETECTED, {
                    "signature": state.last_signature,
                    "round": state.round_index,
                })
                run.phase = ReconcilerState.TERMINATED
                yield LOOP_DETECTED_MESSAGE
                return
            state.advance()

    async def _interrupted(self, run: _StreamRun, error: Exception) -> None:
        _logger.warning(
            "Stream interrupted in state %s: %s: %s",
            run.phase.value, type(error).__name__, error,
        )
        run.phase = ReconcilerState.TERMINATED
        await self._emit(EventType.STREAM_INTERRUPTED, {
            "error": f"{type(error).__name__}: {error}",
            "round": run.state.round_index,
        })

    async def _simulate(
        self, request: ModelRequest, state: RoundState,
    ) -> AsyncGenerator[str, None]:
        """Finish the run without streaming and replay the text word by word."""
        orchestrator = ToolCallOrchestrator(
            self._adapter,
            scheduler=self._scheduler,
            sandbox=self._sandbox,
            event_bus=self._event_bus,
            spec=self.orchestration,
        )
        outcome = await orchestrator.drive(request, state)
        delay = self.stream_spec.fallback_chunk_delay
        sleep = self._sleep or asyncio.sleep
        for i, chunk in enumerate(split_words(outcome.text)):
            if i and delay > 0:
                await sleep(delay)
            yield chunk

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.publish(event_type, **data)


async def _close(events: AsyncIterator[StreamEvent]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()
