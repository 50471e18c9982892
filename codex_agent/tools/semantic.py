"""
Semantic search tools — thin adapters over the host-supplied SemanticIndex.
"""

from __future__ import annotations
import logging

from .base import BaseTool
from ..core.arguments import IndexCodebaseArgs, SemanticSearchArgs
from ..core.models import ToolResult
from ..core.tool_context import ToolContext

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Semantic index is not configured"


class SemanticSearchTool(BaseTool):
    name = "semantic_search"
    description = "Search the indexed codebase by meaning rather than exact text."
    input_schema = {
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "limit": {"type": "number", "description": "Maximum results (default 5)"},
        },
        "required": ["query"],
    }

    async def execute(self, args: SemanticSearchArgs, ctx: ToolContext) -> ToolResult:
        if ctx.semantic_index is None:
            return self._error(NOT_CONFIGURED, ctx)
        hits = await ctx.semantic_index.search(args.query, args.limit)
        if not hits:
            return self._success(f"No semantic matches for '{args.query}'.", ctx, count=0)
        lines = []
        for hit in hits:
            location = hit.get("path", "?")
            if hit.get("line") is not None:
                location += f":{hit['line']}"
            score = hit.get("score")
            header = f"{location} (score {score:.3f})" if isinstance(score, (int, float)) else location
            lines.append(header)
            snippet = (hit.get("text") or "").strip()
            if snippet:
                lines.extend(f"    {l}" for l in snippet.splitlines()[:8])
        return self._success("\n".join(lines), ctx, count=len(hits))


class IndexCodebaseTool(BaseTool):
    name = "index_codebase"
    description = "Build or refresh the semantic index for a directory."
    input_schema = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Directory to index"}},
    }

    async def execute(self, args: IndexCodebaseArgs, ctx: ToolContext) -> ToolResult:
        if ctx.semantic_index is None:
            return self._error(NOT_CONFIGURED, ctx)
        target = ctx.resolve(args.path or ".")
        if ctx.dry_run:
            return self._dry_run(f"[Dry Run] Would index: {target}", ctx)
        count = await ctx.semantic_index.index(str(target))
        logger.info(f"Indexed {count} chunks under {target}")
        return self._success(f"Indexed {count} chunks under {target}", ctx, count=count)
