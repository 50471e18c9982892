"""
Tool Registry — handlers keyed by canonical tool name.
Handles registration, schema retrieval, and exception-safe execution.
"""

from __future__ import annotations
import logging
import time
from typing import Optional

from .arguments import ToolArguments
from .models import ToolResult, ToolSchema
from .tool_context import ToolContext

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Central registry for tool handlers."""

    def __init__(self):
        self._tools: dict = {}  # canonical name -> BaseTool instance
        self._routes: dict[str, str] = {}  # extra canonical names served by a tool

    def register(self, tool, *also_handles: str) -> None:
        """Register a tool instance, optionally for additional canonical names."""
        self._tools[tool.name] = tool
        for name in also_handles:
            self._routes[name] = tool.name

    def get_tool(self, name: str):
        """Get a tool by canonical name, or None."""
        target = self._routes.get(name, name)
        return self._tools.get(target)

    def has_tool(self, name: str) -> bool:
        return self.get_tool(name) is not None

    def get_schemas(self) -> list[ToolSchema]:
        """Return all tool schemas for the provider request."""
        return [tool.get_schema() for tool in self._tools.values()]

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    @property
    def tool_names(self) -> list[str]:
        return self.list_tools()

    async def execute_tool(self, name: str, args: ToolArguments, ctx: ToolContext) -> ToolResult:
        """Execute one validated call. Handler exceptions become exit_code 1 results."""
        t0 = time.time()
        tool = self.get_tool(name)
        if tool is None:
            return ToolResult(
                tool_call_id=ctx.call_id,
                output=f"no function found: {name}",
                metadata={"exit_code": 1, "duration_seconds": 0},
            )
        try:
            result = await tool.execute(args, ctx)
        except Exception as e:
            logger.exception(f"Tool {name} raised")
            result = ToolResult(
                tool_call_id=ctx.call_id,
                output=f"Tool execution error: {str(e)}",
                metadata={"exit_code": 1},
            )
        result.tool_call_id = ctx.call_id
        result.metadata.setdefault("exit_code", 0)
        result.metadata.setdefault("duration_seconds", round(time.time() - t0, 3))
        return result
