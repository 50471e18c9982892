"""
AgentLoop — the turn state machine.

    IDLE -> REQUESTING -> STREAMING -> (TOOL_DISPATCH -> REQUESTING)* -> FLUSHING -> IDLE

One ``run()`` sends the accumulated history plus the turn's staged messages
to the provider, drives the stream to a finalized assistant message, recovers
tool calls from content when the provider emitted none natively, dispatches
them, and feeds the results back until a message carries no tool calls.

Every staged item is tagged with the generation that produced it. ``cancel()``
and ``terminate()`` bump the generation, so anything still in flight for the
old run becomes inert. Tool call ids seen during a run stay in the
PendingAbortSet until answered; after a cancellation the next run answers
them with synthetic "aborted" results before any new user input.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from ..config.settings import AgentSettings
from .approvals import ConfirmationCallback
from .arguments import ArgValidator
from .cancellation import CancellationController, PendingAbortSet, ScheduledTransition
from .dispatcher import ToolDispatcher
from .errors import AgentTerminatedError, CancellationError, ProviderTerminalError
from .loop_guard import LoopGuard
from .models import Message, ProviderRequest, ToolCall, ToolResult
from .retry import (
    PREMATURE_CLOSE_MESSAGE,
    ErrorClassification,
    RetryCoordinator,
    RetryPolicy,
    classify_provider_error,
    error_details,
    network_message,
    terminal_message,
)
from .stream_consumer import PartialUpdateCallback, StreamConsumer
from .structured_logger import bind_log_context, reset_log_context
from .tool_call_recovery import ToolCallRecoverer, flatten_tool_calls
from .tool_context import SemanticIndex, ToolContext
from .tool_names import NameNormalizer
from .tool_registry import ToolRegistry
from ..tools.memory_tool import MemoryFile

logger = logging.getLogger(__name__)


class TurnState(Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    FLUSHING = "flushing"


class AgentLoop:
    """
    Top-level orchestrator for one interactive session.

    Usage::

        loop = AgentLoop(provider, registry, settings, on_item=ui.show)
        await loop.run("fix the failing test")
        await loop.wait_idle()
    """

    def __init__(
        self,
        provider,
        registry: ToolRegistry,
        settings: Optional[AgentSettings] = None,
        *,
        on_item: Optional[Callable[[Message], None]] = None,
        on_partial_update: Optional[PartialUpdateCallback] = None,
        on_loading: Optional[Callable[[bool], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
        on_file_access: Optional[Callable[[str], None]] = None,
        get_command_confirmation: Optional[ConfirmationCallback] = None,
        semantic_index: Optional[SemanticIndex] = None,
        retry_sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.provider = provider
        self.registry = registry
        self.settings = settings or AgentSettings()

        self.on_item = on_item
        self.on_partial_update = on_partial_update
        self.on_loading = on_loading
        self.on_reset = on_reset
        self.on_file_access = on_file_access
        self.get_command_confirmation = get_command_confirmation
        self.semantic_index = semantic_index

        self.normalizer = NameNormalizer()
        self.validator = ArgValidator(self.normalizer)
        self.loop_guard = LoopGuard(self.settings.loop_threshold)
        self.recoverer = ToolCallRecoverer(self.normalizer, self.validator)
        self.dispatcher = ToolDispatcher(
            registry,
            loop_guard=self.loop_guard,
            normalizer=self.normalizer,
            validator=self.validator,
            max_parallel=self.settings.max_parallel_tools,
        )
        self.retry = RetryCoordinator(
            RetryPolicy(
                max_attempts=self.settings.max_attempts,
                rate_limit_base_ms=self.settings.rate_limit_wait_ms,
            ),
            provider_name=getattr(provider, "display_name", self.settings.provider),
            sleep=retry_sleep,
        )

        self._cancellation = CancellationController()
        self._pending = PendingAbortSet()
        self._flush = ScheduledTransition("flush")
        self._history: list[Message] = []
        self._always_approved: set = set()
        self._state = TurnState.IDLE

    # ── Introspection ──────────────────────────────────────────

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def generation(self) -> int:
        return self._cancellation.generation

    @property
    def pending_aborts(self) -> PendingAbortSet:
        return self._pending

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def terminated(self) -> bool:
        return self._cancellation.terminated

    def _transition(self, state: TurnState) -> None:
        if state is not self._state:
            logger.debug(f"AgentLoop {self._state.value} -> {state.value}")
            self._state = state

    # ── Host callbacks (fire-and-forget) ───────────────────────

    def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"{name} callback failed: {e}")

    def _set_loading(self, loading: bool) -> None:
        self._emit("on_loading", loading)

    # ── Public API ─────────────────────────────────────────────

    async def run(
        self,
        input: Union[str, Message, Iterable[Message]],
        prev_items: Optional[Iterable[Message]] = None,
    ) -> None:
        """
        Run one turn to completion (or until canceled).

        ``prev_items`` overrides the loop's own history for this request.
        Terminal provider failures are reported through ``on_item`` and end
        the turn normally; unrecognized errors propagate.
        """
        if self._cancellation.terminated:
            raise AgentTerminatedError()

        self._flush.cancel()
        generation = self._cancellation.begin_run()
        token = bind_log_context(run_id=f"run-{generation}", provider_name=self.retry.provider_name)
        try:
            await self._run(generation, input, prev_items)
        finally:
            reset_log_context(token)

    async def _run(self, generation: int, input, prev_items) -> None:
        is_current = lambda: self._cancellation.is_current(generation)

        abort_outputs = [ToolResult.aborted(call_id).to_message() for call_id in self._pending.drain()]
        if abort_outputs:
            logger.info(f"Answering {len(abort_outputs)} pending tool call(s) as aborted")
        turn_input: list[Message] = abort_outputs + _as_messages(input)
        relevant_memory = self._relevant_memory(turn_input)
        history = list(self._history if prev_items is None else prev_items)
        staged: list[Message] = []

        def stage(item: Message) -> None:
            if not is_current():
                logger.debug(f"Dropping stale {item.role} item from generation {generation}")
                return
            staged.append(item)
            self._history.append(item)
            self._emit("on_item", item)

        self._set_loading(True)
        try:
            while turn_input:
                if not is_current() or self._cancellation.master_signal.aborted:
                    self._set_loading(False)
                    return
                for item in turn_input:
                    stage(item)
                turn_input = []

                message = await self._request_and_stream(history + staged, is_current, relevant_memory)
                if message is None:
                    return

                if not message.has_tool_calls:
                    self._recover_tool_calls(message)

                if message.has_tool_calls:
                    self._flatten(message)
                    stage(message)
                    self._transition(TurnState.TOOL_DISPATCH)
                    results = await self.dispatcher.dispatch(
                        message.tool_calls, self._tool_context(),
                    )
                    if not is_current():
                        logger.debug("Discarding tool results from a canceled run")
                        return
                    for result in results:
                        self._pending.discard(result.tool_call_id)
                        turn_input.append(result.to_message())
                        turn_input.extend(result.additional_messages)
                elif message.text or message.reasoning:
                    stage(message)
        except Exception as exc:
            if not is_current():
                logger.debug(f"Ignoring error from a canceled run: {exc}")
                return
            notice = self._turn_error_message(exc)
            if notice is None:
                self._set_loading(False)
                self._transition(TurnState.IDLE)
                raise
            stage(Message(role="assistant", content=notice))
            self._set_loading(False)
            self._transition(TurnState.IDLE)
            return

        self._transition(TurnState.FLUSHING)

        def flush() -> None:
            if not is_current():
                return
            # the turn finished without a cancel, so every call was answered
            self._pending.clear()
            self._set_loading(False)
            self._transition(TurnState.IDLE)

        self._flush.schedule(self.settings.flush_delay, flush)

    async def wait_idle(self) -> None:
        """Wait for a pending flush to fire or be canceled."""
        await self._flush.wait()

    def cancel(self) -> None:
        """Interrupt the active run so the user can issue new instructions."""
        if self._cancellation.terminated:
            return
        logger.debug(f"AgentLoop.cancel() at generation {self.generation}, state={self._state.value}")
        self._flush.cancel()
        self._cancellation.cancel()
        if not self._pending:
            self.loop_guard.clear()
            self._emit("on_reset")
        self._set_loading(False)
        self._transition(TurnState.IDLE)

    def terminate(self) -> None:
        """Hard stop. The instance is unusable afterwards."""
        if self._cancellation.terminated:
            return
        self._flush.cancel()
        self._cancellation.cancel("terminated")
        self._cancellation.terminate()
        self._set_loading(False)
        self._transition(TurnState.IDLE)
        logger.info("AgentLoop terminated")

    def clear_history(self) -> None:
        """Forget the conversation, loop-guard history and pending aborts (/clear)."""
        self._flush.cancel()
        self._history.clear()
        self._pending.clear()
        self.loop_guard.clear()
        self._emit("on_reset")

    # ── Turn internals ─────────────────────────────────────────

    def _relevant_memory(self, turn_input: list[Message]) -> list[str]:
        """Memory facts matching the latest user input, for the system prompt."""
        if not self.settings.memory_context:
            return []
        query = next((m.text for m in reversed(turn_input) if m.role == "user" and m.text), "")
        if not query:
            return []
        path = self._tool_context().resolve(self.settings.memory_file)
        try:
            return MemoryFile(path).relevant(query, self.settings.memory_context_limit)
        except OSError as e:
            logger.warning(f"Could not read memory file {path}: {e}")
            return []

    def _build_request(
        self, messages: list[Message], relevant_memory: Optional[list[str]] = None,
    ) -> ProviderRequest:
        instructions = self.settings.system_instructions(relevant_memory)
        system = [Message(role="system", content=instructions)] if instructions else []
        return ProviderRequest(
            model=self.settings.model,
            messages=system + messages,
            tools=self.registry.get_schemas(),
            reasoning_effort=self.settings.reasoning_effort,
        )

    async def _request_and_stream(
        self, messages: list[Message], is_current, relevant_memory: Optional[list[str]] = None,
    ) -> Optional[Message]:
        """One provider round. Returns None when the turn must end here."""
        self._transition(TurnState.REQUESTING)
        signal = self._cancellation.new_stream_signal()
        request = self._build_request(messages, relevant_memory)
        outcome = await self.retry.execute(self.provider.stream, request, signal, abort_signal=signal)

        if not is_current():
            return None
        if not outcome.success:
            if outcome.terminal_message:
                self._emit_terminal(outcome.terminal_message)
            else:
                self._set_loading(False)
            self._transition(TurnState.IDLE)
            return None

        self._transition(TurnState.STREAMING)
        consumer = StreamConsumer(
            on_partial_update=self.on_partial_update,
            on_tool_call_seen=self._pending.add,
            is_current=is_current,
            normalizer=self.normalizer,
        )
        return await consumer.consume(outcome.result, signal)

    async def _complete(self, prompt: str) -> str:
        """One tool-less provider round outside the conversation, used by maintain_memory."""
        signal = self._cancellation.exec_signal
        request = ProviderRequest(
            model=self.settings.model,
            messages=[Message(role="user", content=prompt)],
            reasoning_effort=self.settings.reasoning_effort,
        )
        outcome = await self.retry.execute(self.provider.stream, request, signal, abort_signal=signal)
        if outcome.aborted or signal.aborted:
            raise CancellationError("Completion was canceled")
        if not outcome.success:
            raise ProviderTerminalError(outcome.terminal_message or "Completion request failed")
        message = await StreamConsumer(normalizer=self.normalizer).consume(outcome.result, signal)
        if message is None:
            raise CancellationError("Completion was canceled")
        return message.text

    def _emit_terminal(self, text: str) -> None:
        message = Message(role="assistant", content=text)
        self._history.append(message)
        self._emit("on_item", message)
        self._set_loading(False)

    def _recover_tool_calls(self, message: Message) -> None:
        content = message.text
        if not content or not self.recoverer.looks_like_tool_call(content):
            return
        recovered = self.recoverer.recover(content)
        if not recovered:
            return
        for call in recovered:
            self._pending.add(call.id)
        message.tool_calls = recovered
        message.content = ""

    def _flatten(self, message: Message) -> None:
        original: list[ToolCall] = message.tool_calls or []
        flattened = flatten_tool_calls(original, self.validator)
        if len(flattened) == len(original):
            return
        new_ids = {c.id for c in flattened}
        for call in original:
            if call.id not in new_ids:
                self._pending.discard(call.id)
        for call in flattened:
            self._pending.add(call.id)
        message.tool_calls = flattened

    def _tool_context(self) -> ToolContext:
        return ToolContext(
            settings=self.settings,
            abort_signal=self._cancellation.exec_signal,
            get_command_confirmation=self.get_command_confirmation,
            on_file_access=self.on_file_access,
            semantic_index=self.semantic_index,
            always_approved=self._always_approved,
            complete=self._complete,
        )

    def _turn_error_message(self, exc: BaseException) -> Optional[str]:
        """User-visible notice for errors that end the turn, or None to propagate."""
        classification = classify_provider_error(exc)
        provider_name = self.retry.provider_name
        logger.warning(f"Turn ended by {classification.value}: {exc}")
        if classification is ErrorClassification.PREMATURE_CLOSE:
            return PREMATURE_CLOSE_MESSAGE
        if classification.connectivity:
            return network_message(provider_name)
        if classification.terminal or classification is ErrorClassification.RATE_LIMIT:
            return terminal_message(classification, error_details(exc), provider_name)
        return None


def _as_messages(input: Union[str, Message, Iterable[Message]]) -> list[Message]:
    if isinstance(input, str):
        return [Message(role="user", content=input)]
    if isinstance(input, Message):
        return [input]
    return list(input)
