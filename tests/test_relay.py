"""Tests for the ChatRelay facade."""

from unittest.mock import AsyncMock

import pytest

from chat_relay import ChatRelay
from chat_relay.config import RelayConfig
from chat_relay.errors import ProviderConnectionError, ProviderError, RefusedError
from chat_relay.providers.base import ProviderAdapter
from chat_relay.providers.openai import OpenAIAdapter
from chat_relay.tools.base import FunctionDescriptor
from chat_relay.types import FunctionCall, Message, ModelOutput, SegmentEnd, TextDelta


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _segment(*events):
    for event in events:
        yield event


@pytest.fixture
def adapter():
    mock = AsyncMock(spec=ProviderAdapter)
    mock.display_name = "Fake"
    return mock


@pytest.fixture
def relay(adapter):
    return ChatRelay(adapter, sleep=RecordingSleep())


@pytest.fixture
def echo():
    return FunctionDescriptor("echo", "Echo the input", lambda args: args.get("text", ""))


class TestGetModelResponse:
    async def test_text(self, relay, adapter):
        adapter.complete.side_effect = [ModelOutput(text="4")]
        history = [Message.user("hello"), Message.assistant("hi")]
        text = await relay.get_model_response("Be terse", "What is 2+2?", "low", history)

        assert text == "4"
        sent = adapter.complete.await_args.args[0]
        assert sent.system_prompt == "Be terse"
        assert [m.content for m in sent.messages] == ["hello", "hi", "What is 2+2?"]

    async def test_tool_round(self, relay, adapter, echo):
        adapter.complete.side_effect = [
            ModelOutput(function_calls=[FunctionCall("c1", "echo", '{"text": "pong"}')]),
            ModelOutput(text="pong"),
        ]
        assert await relay.get_model_response(None, "ping", functions=[echo]) == "pong"

    async def test_forced_tools(self, relay, adapter, echo):
        adapter.complete.side_effect = [
            ModelOutput(function_calls=[FunctionCall("c1", "echo", "{}")]),
            ModelOutput(text="done"),
        ]
        await relay.get_model_response_with_forced_tools(None, "go", functions=[echo])
        first = adapter.complete.await_args_list[0].args[0]
        assert first.force_function_call is True

    async def test_forced_needs_functions(self, relay):
        with pytest.raises(ValueError):
            await relay.get_model_response_with_forced_tools(None, "go")

    async def test_unclassified_errors_are_wrapped(self, relay, adapter):
        cause = ProviderError("bad request", status=400)
        adapter.complete.side_effect = cause
        with pytest.raises(ProviderConnectionError, match="Fake API error: 400: bad request") as exc_info:
            await relay.get_model_response(None, "hi")
        assert exc_info.value.__cause__ is cause

    async def test_refusals_pass_through(self, relay, adapter):
        adapter.complete.side_effect = RefusedError("nope", kind="content_filter", status=400)
        with pytest.raises(RefusedError, match="content filter triggered"):
            await relay.get_model_response(None, "hi")


class TestConstrainedResponse:
    SCHEMA = {"type": "object", "properties": {"score": {"type": "integer"}}}

    async def test_parsed_json(self, relay, adapter):
        adapter.complete.side_effect = [ModelOutput(text='{"score": 7}')]
        value = await relay.get_constrained_response(
            None, "Rate it", "medium", self.SCHEMA, default={"score": 0},
        )
        assert value == {"score": 7}
        assert adapter.complete.await_args.args[0].response_schema == self.SCHEMA

    async def test_empty_output_returns_default(self, relay, adapter):
        adapter.complete.side_effect = [ModelOutput(text=None)]
        value = await relay.get_constrained_response(
            None, "Rate it", "medium", self.SCHEMA, default={"score": 0},
        )
        assert value == {"score": 0}

    async def test_invalid_json_returns_default(self, relay, adapter):
        adapter.complete.side_effect = [ModelOutput(text="not json")]
        value = await relay.get_constrained_response(
            None, "Rate it", "medium", self.SCHEMA, default=None,
        )
        assert value is None

    async def test_provider_failure_returns_default(self, relay, adapter):
        adapter.complete.side_effect = ProviderError("bad", status=400)
        value = await relay.get_constrained_response(
            None, "Rate it", "medium", self.SCHEMA, default="fallback",
        )
        assert value == "fallback"


class TestStreaming:
    async def test_stream(self, relay, adapter):
        adapter.open_stream.side_effect = [
            _segment(TextDelta("Hel"), TextDelta("lo"), SegmentEnd()),
        ]
        chunks = [c async for c in relay.stream_model_response(None, "hi")]
        assert chunks == ["Hel", "lo"]

    async def test_forced_stream_needs_functions(self, relay):
        with pytest.raises(ValueError):
            relay.stream_model_response_with_forced_tools(None, "hi")

    async def test_forced_stream(self, relay, adapter, echo):
        adapter.open_stream.side_effect = [_segment(TextDelta("ok"), SegmentEnd())]
        chunks = [
            c async for c in relay.stream_model_response_with_forced_tools(
                None, "hi", functions=[echo],
            )
        ]
        assert chunks == ["ok"]
        assert adapter.open_stream.await_args.args[0].force_function_call is True


class TestLifecycle:
    async def test_from_config_uses_largest_tier(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test-key")
        relay = ChatRelay.from_config(RelayConfig())
        try:
            assert isinstance(relay.adapter, OpenAIAdapter)
            assert relay.adapter.model == "gpt-5"
        finally:
            await relay.close()

    async def test_context_manager_closes_adapter(self, adapter):
        async with ChatRelay(adapter) as relay:
            assert relay.conversation is not None
        adapter.close.assert_awaited_once()
