"""
LoopGuard — blocks a tool call that keeps failing with identical arguments.

The key is the exact ``name + ":" + raw_arguments`` string. Once a key has
failed ``threshold`` times, further identical calls are answered with a
loop-detected result instead of being executed. A success clears the key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import LoopDetectedError
from .models import ToolResult

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 2
MAX_ERROR_SNIPPET = 200


@dataclass
class ToolCallHistoryEntry:
    attempt_count: int = 0
    last_error: str = ""


def tool_call_signature(name: str, raw_arguments: str) -> str:
    return f"{name}:{raw_arguments}"


class LoopGuard:
    """Per-session history of failing tool-call signatures."""

    def __init__(self, threshold: int = DEFAULT_THRESHOLD):
        self.threshold = threshold
        self._history: dict[str, ToolCallHistoryEntry] = {}

    def entry(self, name: str, raw_arguments: str) -> Optional[ToolCallHistoryEntry]:
        return self._history.get(tool_call_signature(name, raw_arguments))

    def is_blocked(self, name: str, raw_arguments: str) -> bool:
        entry = self.entry(name, raw_arguments)
        return entry is not None and entry.attempt_count >= self.threshold

    def blocked_result(self, call_id: str, name: str, raw_arguments: str) -> ToolResult:
        """Loop-detected answer for a blocked call."""
        entry = self.entry(name, raw_arguments) or ToolCallHistoryEntry()
        logger.warning(
            f"Loop detected: {name} failed {entry.attempt_count} times with identical arguments"
        )
        error = LoopDetectedError(entry.attempt_count, entry.last_error)
        return ToolResult.from_error(call_id, error, duration_seconds=0, loop_detected=True)

    def record(self, name: str, raw_arguments: str, result: ToolResult) -> None:
        """Clear the key on success, count the failure otherwise."""
        key = tool_call_signature(name, raw_arguments)
        if result.success:
            self._history.pop(key, None)
            return
        entry = self._history.setdefault(key, ToolCallHistoryEntry())
        entry.attempt_count += 1
        entry.last_error = (result.output or "")[:MAX_ERROR_SNIPPET]

    def clear(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)
