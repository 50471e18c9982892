"""
Base tool class — all tool handlers inherit from this.
Defines the standard interface: name, description, schema, execute().
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any

from ..core.arguments import ToolArguments
from ..core.models import ToolResult, ToolSchema
from ..core.tool_context import ToolContext


class BaseTool(ABC):
    """Abstract base class for all tool handlers."""

    name: str = ""
    description: str = ""
    input_schema: dict = {}

    @abstractmethod
    async def execute(self, args: ToolArguments, ctx: ToolContext) -> ToolResult:
        """
        Run the tool with already-validated arguments.
        Must return a ToolResult; exit_code 0 means success.

        Args:
            args: The typed argument value for this tool's canonical name.
            ctx: Settings, abort signal, approval and file-access hooks.
        """
        pass

    def get_schema(self) -> ToolSchema:
        """Return the tool's schema for LLM consumption."""
        return ToolSchema(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )

    def _success(self, output: str, ctx: ToolContext, **metadata: Any) -> ToolResult:
        """Helper to create a successful result."""
        return ToolResult(
            tool_call_id=ctx.call_id,
            output=output,
            metadata={"exit_code": 0, **metadata},
        )

    def _error(self, error: str, ctx: ToolContext, exit_code: int = 1, **metadata: Any) -> ToolResult:
        """Helper to create an error result."""
        return ToolResult(
            tool_call_id=ctx.call_id,
            output=error,
            metadata={"exit_code": exit_code, **metadata},
        )

    def _dry_run(self, output: str, ctx: ToolContext, **metadata: Any) -> ToolResult:
        """Result for a side effect that dry-run mode skipped."""
        return self._success(output, ctx, dry_run=True, **metadata)
