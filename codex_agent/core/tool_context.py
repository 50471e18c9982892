"""
Execution context handed to every tool handler.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..config.settings import AgentSettings
from .approvals import (
    ApplyPatchCommand, CommandConfirmation, ConfirmationCallback, ReviewDecision,
    needs_approval,
)
from .cancellation import AbortSignal

logger = logging.getLogger(__name__)


class SemanticIndex(Protocol):
    """Embedding search collaborator; implementations live outside the engine."""

    async def search(self, query: str, limit: int) -> list[dict]: ...

    async def index(self, path: str) -> int: ...


# One-shot model completion: prompt in, reply text out.
CompletionCallable = Callable[[str], Awaitable[str]]


@dataclass
class ToolContext:
    settings: AgentSettings
    abort_signal: AbortSignal
    get_command_confirmation: Optional[ConfirmationCallback] = None
    on_file_access: Optional[Callable[[str], None]] = None
    semantic_index: Optional[SemanticIndex] = None
    complete: Optional[CompletionCallable] = None
    always_approved: set = field(default_factory=set)
    call_id: str = ""

    def for_call(self, call_id: str) -> "ToolContext":
        return dataclasses.replace(self, call_id=call_id)

    @property
    def workdir(self) -> Path:
        return Path(self.settings.workdir).expanduser().resolve()

    @property
    def dry_run(self) -> bool:
        return self.settings.dry_run

    def resolve(self, path: str, base: Optional[str] = None) -> Path:
        """Resolve ``path`` against ``base`` (or the workdir) when relative."""
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        root = Path(base).expanduser() if base else self.workdir
        if not root.is_absolute():
            root = self.workdir / root
        return (root / candidate).resolve()

    def file_accessed(self, path: Any) -> None:
        if self.on_file_access is None:
            return
        try:
            self.on_file_access(str(path))
        except Exception as e:
            logger.warning(f"on_file_access callback failed: {e}")

    async def confirm(
        self,
        command: list[str],
        apply_patch: Optional[ApplyPatchCommand] = None,
        *,
        is_edit: bool = False,
    ) -> CommandConfirmation:
        """Forward a command to the host for approval, as the policy requires."""
        key = " ".join(command)
        if key in self.always_approved:
            return CommandConfirmation(ReviewDecision.YES)
        if not needs_approval(self.settings.approval_policy, is_edit=is_edit):
            return CommandConfirmation(ReviewDecision.YES)
        if self.get_command_confirmation is None:
            return CommandConfirmation(
                ReviewDecision.NO_CONTINUE,
                custom_deny_message="No approval handler is configured for this command.",
            )
        decision = self.get_command_confirmation(command, apply_patch)
        if inspect.isawaitable(decision):
            decision = await decision
        if decision.decision is ReviewDecision.ALWAYS:
            self.always_approved.add(key)
        return decision
