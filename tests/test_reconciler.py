"""Tests for StreamReconciler with a mocked streaming adapter."""

import json
from unittest.mock import AsyncMock

import pytest

from chat_relay.config import OrchestrationSpec, RetrySpec, StreamSpec
from chat_relay.core.orchestrator import (
    INVALID_RESPONSE_MESSAGE,
    LOOP_DETECTED_MESSAGE,
    ROUNDS_EXHAUSTED_MESSAGE,
)
from chat_relay.core.reconciler import (
    STREAM_INTERRUPTED_MESSAGE,
    StreamReconciler,
    split_words,
)
from chat_relay.errors import (
    ProviderError,
    RefusedError,
    StreamInterruptedError,
    StreamingUnsupportedError,
)
from chat_relay.events.bus import EventBus
from chat_relay.llm.conversation import ConversationBuilder
from chat_relay.llm.retry import RetryScheduler
from chat_relay.providers.base import ProviderAdapter
from chat_relay.tools.base import FunctionDescriptor
from chat_relay.types import (
    EventType,
    FunctionCall,
    FunctionCallDelta,
    ModelOutput,
    Role,
    SegmentEnd,
    TextDelta,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _segment(*events):
    for event in events:
        yield event


async def _broken_segment(*events, error):
    for event in events:
        yield event
    raise error


def _weather_call(city="Oslo", key="0", call_id="call_w"):
    return FunctionCallDelta(
        key=key,
        name="weather",
        call_id=call_id,
        arguments=json.dumps({"city": city}),
        complete=True,
    )


def _make_adapter() -> AsyncMock:
    adapter = AsyncMock(spec=ProviderAdapter)
    adapter.display_name = "Fake"
    return adapter


def _make_reconciler(adapter, sleep=None, bus=None, **orchestration) -> StreamReconciler:
    sleep = sleep or RecordingSleep()
    return StreamReconciler(
        adapter,
        scheduler=RetryScheduler(RetrySpec(), sleep=sleep),
        event_bus=bus or EventBus(),
        orchestration=OrchestrationSpec(**orchestration),
        stream=StreamSpec(),
        sleep=sleep,
    )


async def _collect(reconciler, request) -> list[str]:
    return [chunk async for chunk in reconciler.stream(request)]


@pytest.fixture
def weather_calls():
    return []


@pytest.fixture
def request_with_weather(weather_calls):
    def weather(args):
        weather_calls.append(args["city"])
        return {"city": args["city"], "forecast": "sunny"}

    descriptor = FunctionDescriptor("weather", "Current weather", weather)
    return ConversationBuilder().request("Weather in Oslo?", functions=[descriptor])


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestSplitWords:
    def test_round_trip(self):
        text = "Hello  there,\nworld "
        assert "".join(split_words(text)) == text
        assert split_words("Hello there world") == ["Hello ", "there ", "world"]


class TestTextStreaming:
    async def test_text_passthrough(self):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [
            _segment(TextDelta("Hello "), TextDelta("world"), SegmentEnd()),
        ]
        request = ConversationBuilder().request("hi")
        chunks = await _collect(_make_reconciler(adapter), request)
        assert chunks == ["Hello ", "world"]
        assert adapter.open_stream.await_count == 1

    async def test_stream_without_segment_end(self):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [_segment(TextDelta("Hi"))]
        chunks = await _collect(_make_reconciler(adapter), ConversationBuilder().request("hi"))
        assert chunks == ["Hi"]

    async def test_empty_stream_is_invalid(self):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [_segment(SegmentEnd())]
        chunks = await _collect(_make_reconciler(adapter), ConversationBuilder().request("hi"))
        assert chunks == [INVALID_RESPONSE_MESSAGE]


class TestToolSegments:
    async def test_payload_suppressed_and_tool_round_continues(
        self, request_with_weather, weather_calls,
    ):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [
            _segment(
                TextDelta('Let me check. {"city": '),
                TextDelta('"Oslo"}'),
                _weather_call(),
                SegmentEnd(),
            ),
            _segment(TextDelta("It is sunny."), SegmentEnd()),
        ]
        chunks = await _collect(_make_reconciler(adapter), request_with_weather)

        assert "".join(chunks) == "Let me check. It is sunny."
        assert all("Oslo" not in c for c in chunks)
        assert weather_calls == ["Oslo"]

        second = adapter.open_stream.await_args_list[1].args[0]
        assert [m.role for m in second.messages] == [
            Role.USER, Role.ASSISTANT, Role.FUNCTION_RESULT,
        ]
        assert second.messages[1].content == "Let me check. "
        assert second.messages[1].function_calls[0].id == "call_w"
        assert json.loads(second.messages[2].content)["forecast"] == "sunny"

    async def test_fragmented_call_arguments(self, request_with_weather, weather_calls):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [
            _segment(
                FunctionCallDelta(key="item_1", name="weather", call_id="c1"),
                FunctionCallDelta(key="item_1", arguments='{"ci'),
                FunctionCallDelta(key="item_1", arguments='ty": "Rome"}'),
                SegmentEnd(),
            ),
            _segment(TextDelta("Warm."), SegmentEnd()),
        ]
        chunks = await _collect(_make_reconciler(adapter), request_with_weather)
        assert chunks == ["Warm."]
        assert weather_calls == ["Rome"]

    async def test_forced_only_on_first_segment(self, request_with_weather):
        request_with_weather.force_function_call = True
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [
            _segment(_weather_call(), SegmentEnd()),
            _segment(TextDelta("Sunny."), SegmentEnd()),
        ]
        await _collect(_make_reconciler(adapter), request_with_weather)
        sent = [c.args[0] for c in adapter.open_stream.await_args_list]
        assert [r.force_function_call for r in sent] == [True, False]

    async def test_loop_detected(self, request_with_weather, weather_calls):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = lambda req: _segment(_weather_call(), SegmentEnd())
        chunks = await _collect(_make_reconciler(adapter), request_with_weather)
        assert chunks == [LOOP_DETECTED_MESSAGE]
        assert weather_calls == ["Oslo"]
        assert adapter.open_stream.await_count == 3

    async def test_round_cap(self, request_with_weather, weather_calls):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = lambda req: _segment(
            _weather_call(city=f"City{len(req.messages)}"), SegmentEnd(),
        )
        chunks = await _collect(
            _make_reconciler(adapter, max_rounds=2), request_with_weather,
        )
        assert chunks == [ROUNDS_EXHAUSTED_MESSAGE]
        assert adapter.open_stream.await_count == 2
        assert len(weather_calls) == 2


class TestFailures:
    async def test_mid_stream_error_yields_apology(self):
        bus = EventBus()
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [
            _broken_segment(
                TextDelta("Partial"),
                error=StreamInterruptedError("connection reset"),
            ),
        ]
        chunks = await _collect(
            _make_reconciler(adapter, bus=bus), ConversationBuilder().request("hi"),
        )
        assert chunks == ["Partial", STREAM_INTERRUPTED_MESSAGE]
        assert EventType.STREAM_INTERRUPTED in [e.type for e in bus.history]

    async def test_fatal_open_error_yields_apology(self):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = ProviderError("bad request", status=400)
        chunks = await _collect(_make_reconciler(adapter), ConversationBuilder().request("hi"))
        assert chunks == [STREAM_INTERRUPTED_MESSAGE]

    async def test_refusal_raises(self):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = RefusedError("blocked", kind="safety", status=400)
        with pytest.raises(RefusedError):
            await _collect(_make_reconciler(adapter), ConversationBuilder().request("hi"))

    async def test_open_is_retried(self):
        sleep = RecordingSleep()
        adapter = _make_adapter()
        adapter.open_stream.side_effect = [
            ProviderError("rate", status=429),
            _segment(TextDelta("ok"), SegmentEnd()),
        ]
        chunks = await _collect(
            _make_reconciler(adapter, sleep=sleep), ConversationBuilder().request("hi"),
        )
        assert chunks == ["ok"]
        assert sleep.delays == [1.0]


class TestFallback:
    async def test_simulated_streaming(self):
        sleep = RecordingSleep()
        adapter = _make_adapter()
        adapter.open_stream.side_effect = StreamingUnsupportedError(
            "stream is not supported", status=400,
        )
        adapter.complete.side_effect = [ModelOutput(text="Hello there world")]
        chunks = await _collect(
            _make_reconciler(adapter, sleep=sleep), ConversationBuilder().request("hi"),
        )
        assert chunks == ["Hello ", "there ", "world"]
        assert sleep.delays == [0.05, 0.05]
        assert adapter.complete.await_count == 1

    async def test_fallback_despite_refusal_like_wording(self):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = StreamingUnsupportedError(
            "This model cannot be used with stream=true", status=400,
        )
        adapter.complete.side_effect = [ModelOutput(text="hello there")]
        chunks = await _collect(_make_reconciler(adapter), ConversationBuilder().request("hi"))
        assert chunks == ["hello ", "there"]

    async def test_simulated_streaming_runs_tools(self, request_with_weather, weather_calls):
        adapter = _make_adapter()
        adapter.open_stream.side_effect = StreamingUnsupportedError("no stream", status=400)
        adapter.complete.side_effect = [
            ModelOutput(function_calls=[FunctionCall("c1", "weather", '{"city": "Oslo"}')]),
            ModelOutput(text="Sunny in Oslo."),
        ]
        chunks = await _collect(_make_reconciler(adapter), request_with_weather)
        assert "".join(chunks) == "Sunny in Oslo."
        assert weather_calls == ["Oslo"]
        assert adapter.complete.await_count == 2
