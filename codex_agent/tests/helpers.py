"""
Shared test helpers: a scriptable provider, delta builders and a settings factory.

Usage:
    provider = MockProvider()
    provider.enqueue_text("Hello!")
    provider.enqueue_tool_call("shell", {"cmd": ["ls"]}, call_id="call_1")
    provider.enqueue_error(SomeError("boom"))   # raised when the stream is opened
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional

from codex_agent.config.settings import AgentSettings
from codex_agent.core.approvals import ApprovalPolicy
from codex_agent.core.cancellation import AbortController
from codex_agent.core.models import ProviderRequest, StreamDelta, ToolCallDelta
from codex_agent.core.tool_context import ToolContext


def text_deltas(text: str, finish: str = "stop") -> list[StreamDelta]:
    return [StreamDelta(content=text), StreamDelta(finish_reason=finish)]


def tool_call_deltas(name: str, arguments: Any, call_id: str = "call_1", index: int = 0) -> list[StreamDelta]:
    """A tool call split across three chunks, the way OpenAI streams it."""
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    half = len(raw) // 2
    return [
        StreamDelta(tool_calls=[ToolCallDelta(index=index, id=call_id, name=name, arguments="")]),
        StreamDelta(tool_calls=[ToolCallDelta(index=index, arguments=raw[:half])]),
        StreamDelta(tool_calls=[ToolCallDelta(index=index, arguments=raw[half:])]),
        StreamDelta(finish_reason="tool_calls"),
    ]


async def iterate(deltas: list[StreamDelta], delay: float = 0.0) -> AsyncIterator[StreamDelta]:
    for delta in deltas:
        if delay:
            await asyncio.sleep(delay)
        yield delta


class MockProvider:
    """Provider double returning pre-queued responses in order."""

    display_name = "MockLLM"

    def __init__(self):
        self._queue: list[tuple[str, Any, float]] = []
        self.requests: list[ProviderRequest] = []
        self.call_count = 0

    def enqueue(self, deltas: list[StreamDelta], delay: float = 0.0) -> "MockProvider":
        self._queue.append(("deltas", deltas, delay))
        return self

    def enqueue_text(self, text: str) -> "MockProvider":
        return self.enqueue(text_deltas(text))

    def enqueue_tool_call(self, name: str, arguments: Any, call_id: str = "call_1") -> "MockProvider":
        return self.enqueue(tool_call_deltas(name, arguments, call_id))

    def enqueue_error(self, error: BaseException) -> "MockProvider":
        self._queue.append(("error", error, 0.0))
        return self

    def enqueue_stream(self, stream: AsyncIterator[StreamDelta]) -> "MockProvider":
        """Return ``stream`` as-is (e.g. a generator that fails mid-way)."""
        self._queue.append(("stream", stream, 0.0))
        return self

    def enqueue_hang(self, first: Optional[list[StreamDelta]] = None) -> "MockProvider":
        """A stream that yields ``first`` and then never finishes."""
        self._queue.append(("hang", first or [], 0.0))
        return self

    async def stream(self, request: ProviderRequest, abort_signal=None) -> AsyncIterator[StreamDelta]:
        self.call_count += 1
        self.requests.append(request)
        if not self._queue:
            return iterate(text_deltas("(no more queued responses)"))
        kind, payload, delay = self._queue.pop(0)
        if kind == "error":
            raise payload
        if kind == "hang":
            return self._hang(payload)
        if kind == "stream":
            return payload
        return iterate(payload, delay)

    @staticmethod
    async def _hang(first: list[StreamDelta]) -> AsyncIterator[StreamDelta]:
        for delta in first:
            yield delta
        await asyncio.Event().wait()


def make_settings(tmp_path=None, **overrides) -> AgentSettings:
    values = {
        "model": "gpt-4.1",
        "approval_policy": ApprovalPolicy.FULL_AUTO,
        "flush_delay": 0.0,
        "base_instructions": "",
        "workdir": str(tmp_path) if tmp_path is not None else ".",
    }
    values.update(overrides)
    return AgentSettings(**values)


def make_context(tmp_path=None, **overrides) -> ToolContext:
    confirm = overrides.pop("get_command_confirmation", None)
    semantic_index = overrides.pop("semantic_index", None)
    complete = overrides.pop("complete", None)
    return ToolContext(
        settings=make_settings(tmp_path, **overrides),
        abort_signal=AbortController().signal,
        get_command_confirmation=confirm,
        semantic_index=semantic_index,
        complete=complete,
        call_id="call_test",
    )
