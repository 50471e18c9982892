"""
Cancellation — generation tokens, abort signals and pending-abort bookkeeping.

A run captures the generation that was current when it started. ``cancel()``
and the next ``run()`` both bump the generation, so any callback still in
flight from an older run sees a stale value and becomes inert.

Abort signals are cooperative: handlers and stream readers observe them,
nothing is preempted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterator, Optional

from .errors import CancellationError

logger = logging.getLogger(__name__)


# ── Abort signal / controller ───────────────────────────────────────

class AbortSignal:
    """
    Read side of an abort controller.

    Usage:
        if signal.aborted:
            return aborted_result()
        # or:
        signal.check()  # raises CancellationError if aborted
        # or, racing I/O:
        await signal.wait()
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str = ""
        self._listeners: list[Callable[[str], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def add_listener(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Call ``listener(reason)`` once on abort (immediately if already aborted).

        Returns a function that unregisters the listener.
        """
        if self.aborted:
            listener(self._reason)
            return lambda: None
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def check(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "aborted")

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for abort. Returns False if ``timeout`` expired first."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _fire(self, reason: str) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(reason)

    def to_dict(self) -> dict:
        return {"aborted": self.aborted, "reason": self._reason}


class AbortController:
    """Owns an AbortSignal. A child controller aborts when its parent does."""

    def __init__(self, parent: Optional[AbortSignal] = None):
        self.signal = AbortSignal()
        self._detach: Callable[[], None] = lambda: None
        if parent is not None:
            self._detach = parent.add_listener(self.abort)

    def abort(self, reason: str = "aborted") -> None:
        if not self.signal.aborted:
            logger.debug(f"Abort requested: {reason}")
        self.signal._fire(reason)

    @property
    def aborted(self) -> bool:
        return self.signal.aborted

    def detach(self) -> None:
        """Stop following the parent signal."""
        self._detach()
        self._detach = lambda: None


# ── Pending aborts ──────────────────────────────────────────────────

class PendingAbortSet:
    """Tool-call ids seen in the stream that have no ToolResult yet. Insertion-ordered."""

    def __init__(self):
        self._ids: dict[str, None] = {}

    def add(self, call_id: str) -> None:
        self._ids[call_id] = None

    def discard(self, call_id: str) -> None:
        self._ids.pop(call_id, None)

    def clear(self) -> None:
        self._ids.clear()

    def drain(self) -> list[str]:
        ids = list(self._ids)
        self._ids.clear()
        return ids

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def __bool__(self) -> bool:
        return bool(self._ids)


# ── Scheduled transition ────────────────────────────────────────────

class ScheduledTransition:
    """A single cancelable delayed callback. Scheduling again replaces the pending one."""

    def __init__(self, name: str = "transition"):
        self._name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = asyncio.Event()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel()
        self._fired.clear()
        loop = asyncio.get_running_loop()

        def _run() -> None:
            self._handle = None
            try:
                callback()
            finally:
                self._fired.set()

        self._handle = loop.call_later(max(0.0, delay), _run)

    def cancel(self) -> bool:
        """Cancel the pending callback. Returns True if one was pending."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        self._fired.set()
        logger.debug(f"{self._name} canceled before firing")
        return True

    async def wait(self) -> None:
        """Wait until the pending callback has fired or been canceled."""
        if self._handle is None:
            return
        await self._fired.wait()


# ── Controller ──────────────────────────────────────────────────────

class CancellationController:
    """Generation counter plus the abort signals for one agent loop instance."""

    def __init__(self):
        self._generation = 0
        self._canceled = False
        self._terminated = False
        self._master = AbortController()
        self._exec = AbortController(self._master.signal)
        self._stream: Optional[AbortController] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def canceled(self) -> bool:
        return self._canceled

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def exec_signal(self) -> AbortSignal:
        return self._exec.signal

    @property
    def master_signal(self) -> AbortSignal:
        return self._master.signal

    def is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._canceled

    def begin_run(self) -> int:
        """Start a new run: bump the generation and arm a fresh exec signal."""
        self._generation += 1
        self._canceled = False
        self._exec.detach()
        self._exec = AbortController(self._master.signal)
        return self._generation

    def new_stream_signal(self) -> AbortSignal:
        """Abort signal for one provider request; also fires on terminate."""
        if self._stream is not None:
            self._stream.detach()
        self._stream = AbortController(self._master.signal)
        return self._stream.signal

    def cancel(self, reason: str = "canceled") -> int:
        """Abort the active stream and tool execution. Returns the new generation."""
        if self._stream is not None:
            self._stream.abort(reason)
        self._exec.abort(reason)
        self._canceled = True
        self._generation += 1
        return self._generation

    def terminate(self) -> bool:
        """Abort everything for good. Returns False if already terminated."""
        if self._terminated:
            return False
        self._terminated = True
        self._master.abort("terminated")
        return True

    def to_dict(self) -> dict:
        return {
            "generation": self._generation,
            "canceled": self._canceled,
            "terminated": self._terminated,
        }
