"""
StreamConsumer — delta accumulation, finalization and abort handling.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from codex_agent.core.cancellation import AbortController
from codex_agent.core.models import StreamDelta, ToolCallDelta
from codex_agent.core.stream_consumer import StreamConsumer
from codex_agent.tests.helpers import iterate, text_deltas, tool_call_deltas


class TestApply:

    def test_content_and_reasoning_concatenate(self):
        consumer = StreamConsumer()
        consumer.apply(StreamDelta(reasoning="thinking "))
        consumer.apply(StreamDelta(reasoning="hard", content="Hel"))
        consumer.apply(StreamDelta(content="lo"))
        message = consumer.finalize()
        assert message.role == "assistant"
        assert message.text == "Hello"
        assert message.reasoning == "thinking hard"
        assert message.tool_calls is None

    def test_tool_call_fragments_accumulate_by_index(self):
        consumer = StreamConsumer()
        for delta in tool_call_deltas("shell", {"cmd": ["ls"]}, call_id="call_a"):
            consumer.apply(delta)
        message = consumer.finalize()
        assert len(message.tool_calls) == 1
        call = message.tool_calls[0]
        assert (call.id, call.name, call.arguments) == ("call_a", "shell", '{"cmd": ["ls"]}')

    def test_interleaved_calls_keep_index_order(self):
        consumer = StreamConsumer()
        consumer.apply(StreamDelta(tool_calls=[
            ToolCallDelta(index=1, id="b", name="read_file", arguments='{"path":'),
            ToolCallDelta(index=0, id="a", name="shell", arguments='{"cmd":'),
        ]))
        consumer.apply(StreamDelta(tool_calls=[
            ToolCallDelta(index=0, arguments='["ls"]}'),
            ToolCallDelta(index=1, arguments='"x"}'),
        ]))
        calls = consumer.finalize().tool_calls
        assert [c.id for c in calls] == ["a", "b"]
        assert calls[1].arguments == '{"path":"x"}'

    def test_names_are_normalized_on_finalize(self):
        consumer = StreamConsumer()
        consumer.apply(StreamDelta(tool_calls=[
            ToolCallDelta(index=0, id="c", name="container.exec<|channel|>x", arguments="{}"),
        ]))
        assert consumer.finalize().tool_calls[0].name == "shell"

    def test_nameless_fragment_dropped_and_missing_id_generated(self):
        consumer = StreamConsumer()
        consumer.apply(StreamDelta(tool_calls=[
            ToolCallDelta(index=0, arguments="{}"),
            ToolCallDelta(index=1, name="read_file", arguments='{"path":"a"}'),
        ]))
        calls = consumer.finalize().tool_calls
        assert len(calls) == 1
        assert calls[0].id.startswith("call_stream_")

    def test_tool_call_seen_once_per_id(self):
        seen = []
        consumer = StreamConsumer(on_tool_call_seen=seen.append)
        for delta in tool_call_deltas("shell", {"cmd": ["ls"]}, call_id="call_a"):
            consumer.apply(delta)
        consumer.finalize()
        assert seen == ["call_a"]

    def test_partial_update_payload(self):
        updates = []
        consumer = StreamConsumer(on_partial_update=lambda *a: updates.append(a))
        consumer.apply(StreamDelta(content="Hi"))
        consumer.apply(StreamDelta(tool_calls=[
            ToolCallDelta(index=0, id="c", name="repo_browser.ls", arguments='{"path": "."}'),
        ]))
        consumer.apply(StreamDelta(finish_reason="tool_calls"))
        assert updates[0] == ("Hi", "", None, None)
        assert updates[1] == ("Hi", "", "list_directory", {"path": "."})
        # finish-only chunk carries nothing new
        assert len(updates) == 2

    def test_active_call_survives_text_chunks(self):
        updates = []
        consumer = StreamConsumer(on_partial_update=lambda *a: updates.append(a))
        consumer.apply(StreamDelta(tool_calls=[
            ToolCallDelta(index=0, id="c", name="read_file", arguments='{"path": "a.py"}'),
        ]))
        consumer.apply(StreamDelta(reasoning="checking"))
        consumer.apply(StreamDelta(content="Reading."))
        assert updates[1] == ("", "checking", "read_file", {"path": "a.py"})
        assert updates[2] == ("Reading.", "checking", "read_file", {"path": "a.py"})

    def test_partial_args_not_yet_json(self):
        updates = []
        consumer = StreamConsumer(on_partial_update=lambda *a: updates.append(a))
        consumer.apply(StreamDelta(tool_calls=[ToolCallDelta(index=0, id="c", name="shell", arguments='{"cm')]))
        assert updates[0][3] == {"raw": '{"cm'}

    def test_failing_partial_callback_is_logged(self):
        consumer = StreamConsumer(on_partial_update=MagicMock(side_effect=RuntimeError("ui gone")))
        consumer.apply(StreamDelta(content="x"))
        assert consumer.finalize().text == "x"

    def test_finalize_is_idempotent(self):
        consumer = StreamConsumer()
        consumer.apply(StreamDelta(content="a"))
        first = consumer.finalize()
        consumer.apply(StreamDelta(content="b"))
        assert consumer.finalize() is first
        assert first.text == "a"

    def test_stale_generation_ignores_deltas(self):
        consumer = StreamConsumer(is_current=lambda: False)
        consumer.apply(StreamDelta(content="late"))
        assert consumer.state.content == ""


class TrackedStream:
    """Async iterator that records whether it was closed."""

    def __init__(self, deltas, error=None):
        self._deltas = list(deltas)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._deltas:
            return self._deltas.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class TestConsume:

    @pytest.mark.asyncio
    async def test_stream_closed_after_finish_reason(self):
        stream = TrackedStream([
            StreamDelta(content="hi"), StreamDelta(finish_reason="stop"), StreamDelta(content="usage"),
        ])
        message = await StreamConsumer().consume(stream)
        assert message.text == "hi"
        assert stream.closed

    @pytest.mark.asyncio
    async def test_stream_closed_after_implicit_stop(self):
        stream = TrackedStream([StreamDelta(content="hi")])
        await StreamConsumer().consume(stream, AbortController().signal)
        assert stream.closed

    @pytest.mark.asyncio
    async def test_stream_closed_when_iteration_fails(self):
        stream = TrackedStream([StreamDelta(content="a")], error=ConnectionResetError("reset"))
        with pytest.raises(ConnectionResetError):
            await StreamConsumer().consume(stream, AbortController().signal)
        assert stream.closed

    @pytest.mark.asyncio
    async def test_consume_to_finish_reason(self):
        consumer = StreamConsumer()
        message = await consumer.consume(iterate(text_deltas("done") + [StreamDelta(content="ignored")]))
        assert message.text == "done"

    @pytest.mark.asyncio
    async def test_stream_end_without_finish_is_implicit_stop(self):
        consumer = StreamConsumer()
        message = await consumer.consume(iterate([StreamDelta(content="partial")]))
        assert message.text == "partial"

    @pytest.mark.asyncio
    async def test_abort_mid_stream_returns_none(self):
        controller = AbortController()

        async def hanging():
            yield StreamDelta(content="a")
            await asyncio.Event().wait()

        consumer = StreamConsumer()
        task = asyncio.ensure_future(consumer.consume(hanging(), controller.signal))
        await asyncio.sleep(0.01)
        controller.abort("user")
        assert await asyncio.wait_for(task, timeout=1) is None
        assert not consumer.finalized

    @pytest.mark.asyncio
    async def test_already_aborted_signal(self):
        controller = AbortController()
        controller.abort()
        consumer = StreamConsumer()
        assert await consumer.consume(iterate(text_deltas("x")), controller.signal) is None

    @pytest.mark.asyncio
    async def test_errors_during_iteration_propagate(self):
        async def broken():
            yield StreamDelta(content="a")
            raise ConnectionResetError("reset")

        with pytest.raises(ConnectionResetError):
            await StreamConsumer().consume(broken())
