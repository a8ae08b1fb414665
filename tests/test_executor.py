"""Tests for RoundExecutor: dedup, ordering and events."""

import asyncio
import json

import pytest

from chat_relay.core.executor import RoundExecutor
from chat_relay.core.state import RoundState
from chat_relay.events.bus import EventBus
from chat_relay.tools.base import FunctionDescriptor
from chat_relay.types import EventType, FunctionCall, FunctionErrorKind, Message, Role


class Counter:
    """Function body that records each invocation."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    def __call__(self, args):
        self.calls.append(args)
        return args.get("n", 0) * 10


@pytest.fixture
def counter():
    return Counter()


@pytest.fixture
def functions(counter):
    async def slow(args):
        await asyncio.sleep(args["delay"])
        return args["tag"]

    return [
        FunctionDescriptor("times_ten", "Multiply by ten", counter),
        FunctionDescriptor("slow", "Sleep then echo", slow),
    ]


@pytest.fixture
def bus():
    return EventBus()


class TestRunRound:
    async def test_assistant_turn_precedes_results(self, functions, bus):
        state = RoundState.from_spec([Message.user("go")])
        calls = [FunctionCall("c1", "times_ten", '{"n": 2}')]
        await RoundExecutor(event_bus=bus).run_round(state, calls, functions, text="Working")

        roles = [m.role for m in state.inputs]
        assert roles == [Role.USER, Role.ASSISTANT, Role.FUNCTION_RESULT]
        assert state.inputs[1].content == "Working"
        assert state.inputs[1].function_calls == tuple(calls)
        assert state.inputs[2].call_id == "c1"
        assert json.loads(state.inputs[2].content) == 20

    async def test_results_keep_call_order(self, functions):
        state = RoundState.from_spec([])
        calls = [
            FunctionCall("a", "slow", '{"delay": 0.05, "tag": "first"}'),
            FunctionCall("b", "slow", '{"delay": 0, "tag": "second"}'),
        ]
        results = await RoundExecutor().run_round(state, calls, functions)
        assert [r.call_id for r in results] == ["a", "b"]
        assert [m.call_id for m in state.inputs[1:]] == ["a", "b"]

    async def test_sequential_mode(self, functions):
        state = RoundState.from_spec([])
        calls = [
            FunctionCall("a", "slow", '{"delay": 0, "tag": "x"}'),
            FunctionCall("b", "slow", '{"delay": 0, "tag": "y"}'),
        ]
        results = await RoundExecutor(concurrent=False).run_round(state, calls, functions)
        assert [json.loads(r.output) for r in results] == ["x", "y"]


class TestDedup:
    async def test_identical_calls_in_one_round_execute_once(self, functions, counter):
        state = RoundState.from_spec([])
        calls = [
            FunctionCall("a", "times_ten", '{"n": 1}'),
            FunctionCall("b", "times_ten", '{"n": 1}'),
        ]
        results = await RoundExecutor().execute(state, calls, functions)
        assert len(counter.calls) == 1
        assert results[0].is_error is False
        assert results[1].error_kind is FunctionErrorKind.DUPLICATE_CALL
        assert results[1].call_id == "b"

    async def test_duplicate_across_rounds(self, functions, counter):
        state = RoundState.from_spec([])
        executor = RoundExecutor()
        await executor.execute(state, [FunctionCall("a", "times_ten", '{"n": 3}')], functions)
        state.advance()
        results = await executor.execute(
            state, [FunctionCall("b", "times_ten", '{"n": 3}')], functions,
        )
        assert len(counter.calls) == 1
        assert results[0].error_kind is FunctionErrorKind.DUPLICATE_CALL

    async def test_reexecutes_after_window_clears(self, functions, counter):
        state = RoundState.from_spec([])
        executor = RoundExecutor()
        call = FunctionCall("a", "times_ten", '{"n": 3}')
        await executor.execute(state, [call], functions)
        for _ in range(3):
            state.advance()
        await executor.execute(state, [call], functions)
        assert len(counter.calls) == 2

    async def test_failed_call_is_not_recorded(self, functions):
        state = RoundState.from_spec([])
        executor = RoundExecutor()
        call = FunctionCall("a", "missing", "{}")
        first = await executor.execute(state, [call], functions)
        second = await executor.execute(state, [call], functions)
        assert first[0].error_kind is FunctionErrorKind.NOT_FOUND
        assert second[0].error_kind is FunctionErrorKind.NOT_FOUND
        assert not state.has_executed(call.signature)

    async def test_failed_call_can_be_retried_next_round(self):
        attempts = []

        def flaky(args):
            attempts.append(args)
            if len(attempts) == 1:
                raise RuntimeError("service unavailable")
            return "ok"

        functions = [FunctionDescriptor("flaky", "Fails once", flaky)]
        state = RoundState.from_spec([])
        executor = RoundExecutor()
        call = FunctionCall("a", "flaky", '{"x": 1}')

        first = await executor.execute(state, [call], functions)
        state.advance()
        second = await executor.execute(state, [call], functions)

        assert first[0].error_kind is FunctionErrorKind.EXECUTION_FAILED
        assert second[0].is_error is False
        assert len(attempts) == 2
        assert state.has_executed(call.signature)

    async def test_identical_failing_calls_in_one_round_run_once(self, functions):
        state = RoundState.from_spec([])
        calls = [FunctionCall("a", "missing", "{}"), FunctionCall("b", "missing", "{}")]
        results = await RoundExecutor().execute(state, calls, functions)
        assert results[0].error_kind is FunctionErrorKind.NOT_FOUND
        assert results[1].error_kind is FunctionErrorKind.DUPLICATE_CALL

    async def test_argument_formatting_matters(self, functions, counter):
        state = RoundState.from_spec([])
        calls = [
            FunctionCall("a", "times_ten", '{"n": 1}'),
            FunctionCall("b", "times_ten", '{"n":1}'),
        ]
        await RoundExecutor().execute(state, calls, functions)
        assert len(counter.calls) == 2


class TestEvents:
    async def test_function_events(self, functions, bus):
        seen = []

        async def handler(event):
            seen.append(event.type)

        bus.subscribe("*", handler)
        state = RoundState.from_spec([])
        calls = [
            FunctionCall("a", "times_ten", '{"n": 1}'),
            FunctionCall("b", "times_ten", '{"n": 1}'),
            FunctionCall("c", "nope", "{}"),
        ]
        await RoundExecutor(event_bus=bus, concurrent=False).execute(state, calls, functions)
        assert seen.count(EventType.FUNCTION_DUPLICATE) == 1
        assert seen.count(EventType.FUNCTION_EXECUTED) == 1
        assert seen.count(EventType.FUNCTION_ERROR) == 1
        assert seen.count(EventType.FUNCTION_EXECUTING) == 2

    async def test_event_payloads(self, functions, bus):
        state = RoundState.from_spec([])
        calls = [
            FunctionCall("a", "times_ten", '{"n": 4}'),
            FunctionCall("b", "times_ten", '{"n": 4}'),
        ]
        await RoundExecutor(event_bus=bus).execute(state, calls, functions)

        by_type = {e.type: e.data for e in bus.history}
        assert by_type[EventType.FUNCTION_DUPLICATE] == {"function": "times_ten", "call_id": "b"}
        assert by_type[EventType.FUNCTION_EXECUTED]["output_length"] == len("40")
