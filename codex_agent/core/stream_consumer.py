"""
StreamConsumer — reassembles provider deltas into one assistant Message.

Content and reasoning are concatenated; tool-call fragments are accumulated
per index because providers split a call's id, name and arguments across many
chunks. Every chunk that carries new information produces a best-effort
``on_partial_update`` for live UI feedback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from .cancellation import AbortSignal
from .json_splitter import try_parse_json
from .models import Message, StreamDelta, ToolCall
from .tool_names import NameNormalizer

logger = logging.getLogger(__name__)

PartialUpdateCallback = Callable[[str, str, Optional[str], Optional[dict]], None]


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class StreamState:
    content: str = ""
    reasoning: str = ""
    tool_calls: dict[int, _PendingToolCall] = field(default_factory=dict)
    finish_reason: Optional[str] = None
    chunks: int = 0
    active_index: Optional[int] = None  # last tool call that received a fragment

    @property
    def active_call(self) -> Optional[_PendingToolCall]:
        if self.active_index is None:
            return None
        return self.tool_calls.get(self.active_index)


class StreamConsumer:
    """
    Drives one provider stream to a finalized Message.

    Usage::

        consumer = StreamConsumer(on_partial_update=ui.update)
        message = await consumer.consume(provider.stream(request, signal), signal)
    """

    def __init__(
        self,
        on_partial_update: Optional[PartialUpdateCallback] = None,
        on_tool_call_seen: Optional[Callable[[str], None]] = None,
        is_current: Optional[Callable[[], bool]] = None,
        normalizer: Optional[NameNormalizer] = None,
    ):
        self._on_partial_update = on_partial_update
        self._on_tool_call_seen = on_tool_call_seen
        self._is_current = is_current or (lambda: True)
        self._normalizer = normalizer or NameNormalizer()
        self.state = StreamState()
        self._message: Optional[Message] = None
        self._seen_ids: set[str] = set()

    @property
    def finalized(self) -> bool:
        return self._message is not None

    @property
    def message(self) -> Optional[Message]:
        return self._message

    # ── Delta handling ─────────────────────────────────────────

    def apply(self, delta: StreamDelta) -> None:
        """Fold one delta into the accumulated state."""
        if self.finalized or not self._is_current():
            return
        state = self.state
        state.chunks += 1

        if delta.content:
            state.content += delta.content
        if delta.reasoning:
            state.reasoning += delta.reasoning

        for frag in delta.tool_calls:
            pending = state.tool_calls.setdefault(frag.index, _PendingToolCall())
            if frag.id:
                pending.id = frag.id
            if frag.name:
                pending.name += frag.name
            if frag.arguments:
                pending.arguments += frag.arguments
            if pending.id and pending.id not in self._seen_ids:
                self._seen_ids.add(pending.id)
                if self._on_tool_call_seen:
                    self._on_tool_call_seen(pending.id)
            state.active_index = frag.index

        if delta.finish_reason:
            state.finish_reason = delta.finish_reason

        if delta.carries_update:
            self._emit_partial(state.active_call)

    def _emit_partial(self, active: Optional[_PendingToolCall]) -> None:
        if not self._on_partial_update:
            return
        name = self._normalizer.normalize(active.name) if active and active.name else None
        args: Optional[dict] = None
        if active is not None:
            parsed, ok = try_parse_json(active.arguments)
            args = parsed if ok and isinstance(parsed, dict) else {"raw": active.arguments}
        try:
            self._on_partial_update(self.state.content, self.state.reasoning, name, args)
        except Exception as e:
            logger.warning(f"on_partial_update callback failed: {e}")

    # ── Finalization ───────────────────────────────────────────

    def finalize(self) -> Message:
        """Build the assistant message. Calling it again returns the same message."""
        if self._message is not None:
            return self._message

        calls: list[ToolCall] = []
        for index in sorted(self.state.tool_calls):
            pending = self.state.tool_calls[index]
            if not pending.name:
                logger.warning(f"Dropping nameless tool call fragment at index {index}")
                continue
            call_id = pending.id or ToolCall.generate_id("call_stream")
            if call_id not in self._seen_ids:
                self._seen_ids.add(call_id)
                if self._on_tool_call_seen:
                    self._on_tool_call_seen(call_id)
            calls.append(ToolCall(
                id=call_id,
                name=self._normalizer.normalize(pending.name),
                arguments=pending.arguments or "{}",
            ))

        self._message = Message(
            role="assistant",
            content=self.state.content,
            reasoning=self.state.reasoning or None,
            tool_calls=calls or None,
        )
        return self._message

    async def consume(
        self,
        stream: AsyncIterator[StreamDelta],
        abort_signal: Optional[AbortSignal] = None,
    ) -> Optional[Message]:
        """Read ``stream`` to the end (or to a finish reason) and finalize.

        Returns None if the signal was aborted or the generation went stale
        before the message was complete.
        """
        iterator = stream.__aiter__()
        try:
            while True:
                if abort_signal is not None and abort_signal.aborted:
                    break
                try:
                    delta = await self._next(iterator, abort_signal)
                except StopAsyncIteration:
                    break
                if delta is None or not self._is_current():
                    break
                self.apply(delta)
                if self.state.finish_reason:
                    return self.finalize()
        finally:
            await _close(iterator)

        if (abort_signal is not None and abort_signal.aborted) or not self._is_current():
            return None
        # stream ended without a finish reason; treat as an implicit stop
        logger.debug("Stream ended without finish_reason, finalizing")
        return self.finalize()

    @staticmethod
    async def _next(iterator, abort_signal: Optional[AbortSignal]) -> Optional[StreamDelta]:
        if abort_signal is None:
            return await iterator.__anext__()
        next_task = asyncio.ensure_future(iterator.__anext__())
        abort_task = asyncio.ensure_future(abort_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, abort_task}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_task.cancel()
        if next_task in done:
            return next_task.result()
        next_task.cancel()
        try:
            await next_task
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            logger.debug(f"Stream raised while being aborted: {e}")
        return None


async def _close(iterator) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as e:
        logger.debug(f"Stream close skipped: {e}")
