"""
Universal data models for the turn engine.
These are provider-agnostic — each provider adapter converts to/from its native format.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union
import json
import time
import uuid


@dataclass
class ToolSchema:
    """Universal tool definition for LLM consumption."""
    name: str
    description: str
    input_schema: dict  # JSON Schema format

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolCall:
    """A single tool invocation, native from the stream or recovered from content."""
    id: str
    name: str
    arguments: str = "{}"  # raw JSON argument string, exactly as received
    parsed_arguments: Optional[Any] = None

    @staticmethod
    def generate_id(prefix: str = "call") -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class ToolResult:
    """Result from executing a tool. exit_code 0 is success."""
    tool_call_id: str
    output: str
    metadata: dict = field(default_factory=lambda: {"exit_code": 0})
    additional_messages: list[Message] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return int(self.metadata.get("exit_code", 0))

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_message(self) -> Message:
        """The tool-role message sent back to the provider."""
        return Message(
            role="tool",
            content=json.dumps({"output": self.output, "metadata": self.metadata}),
            tool_call_id=self.tool_call_id,
        )

    @classmethod
    def from_error(cls, tool_call_id: str, error: Exception, **metadata) -> ToolResult:
        """Failed result whose output is the error message the model should read."""
        return cls(
            tool_call_id=tool_call_id,
            output=str(error),
            metadata={**metadata, "exit_code": getattr(error, "exit_code", 1)},
        )

    @classmethod
    def aborted(cls, tool_call_id: str) -> ToolResult:
        """Synthetic answer for a tool call that was canceled before it produced one."""
        return cls(
            tool_call_id=tool_call_id,
            output="aborted",
            metadata={"exit_code": 1, "duration_seconds": 0},
        )


ContentPart = dict  # {"type": "text", "text": ...} or provider-specific structured part


@dataclass
class Message:
    """A single message in the conversation history."""
    role: Literal["system", "user", "assistant", "tool"]
    content: Union[str, list[ContentPart], None] = ""
    tool_calls: Optional[list[ToolCall]] = None
    tool_call_id: Optional[str] = None
    reasoning: Optional[str] = None
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        """Plain-text view of the content, joining text parts."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.get("text", "") for part in self.content
            if isinstance(part, dict)
        )

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# ── Streaming deltas ────────────────────────────────────────────────

@dataclass
class ToolCallDelta:
    """Fragment of one tool call, addressed by its index in the message."""
    index: int = 0
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass
class StreamDelta:
    """One provider chunk, normalized by a provider adapter."""
    content: Optional[str] = None
    reasoning: Optional[str] = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: Optional[str] = None

    @property
    def carries_update(self) -> bool:
        return bool(self.content or self.reasoning or self.tool_calls)


@dataclass
class ProviderRequest:
    """Everything a provider adapter needs for one streamed completion."""
    model: str
    messages: list[Message]
    tools: list[ToolSchema] = field(default_factory=list)
    reasoning_effort: Optional[str] = None
