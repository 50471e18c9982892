"""
Approval contract between the engine and the host.

The engine never decides whether a command is acceptable; the host's
``get_command_confirmation(command, apply_patch)`` callback does. The executor
only consults the approval policy to decide *whether to ask*.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union


class ApprovalPolicy(Enum):
    SUGGEST = "suggest"        # ask before every command and every file change
    AUTO_EDIT = "auto-edit"    # file changes and patches go through, commands ask
    FULL_AUTO = "full-auto"    # never ask

    @classmethod
    def parse(cls, value: Union[str, "ApprovalPolicy", None]) -> "ApprovalPolicy":
        if isinstance(value, cls):
            return value
        if not value:
            return cls.SUGGEST
        normalized = str(value).strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown approval policy: {value!r}")


class ReviewDecision(Enum):
    YES = "yes"
    NO_CONTINUE = "no-continue"
    NO_EXIT = "no-exit"
    ALWAYS = "always"


@dataclass
class ApplyPatchCommand:
    patch: str


@dataclass
class CommandConfirmation:
    decision: ReviewDecision
    custom_deny_message: Optional[str] = None
    apply_patch: Optional[ApplyPatchCommand] = None

    @property
    def approved(self) -> bool:
        return self.decision in (ReviewDecision.YES, ReviewDecision.ALWAYS)


ConfirmationCallback = Callable[
    [list, Optional[ApplyPatchCommand]],
    Union[CommandConfirmation, Awaitable[CommandConfirmation]],
]


def needs_approval(policy: ApprovalPolicy, *, is_edit: bool) -> bool:
    """Whether the host must be asked. ``is_edit`` covers patches and file writes."""
    if policy is ApprovalPolicy.FULL_AUTO:
        return False
    if policy is ApprovalPolicy.AUTO_EDIT:
        return not is_edit
    return True
