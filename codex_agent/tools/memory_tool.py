"""
Memory Tools — project facts the agent keeps across sessions.

Facts live in a markdown file under the workspace (``.codex/memory.md`` by
default), one per line:

    - [2026-01-31] [build] tests run with `pytest -q`

Tools:
  persistent_memory — append a fact
  query_memory      — keyword search
  forget_memory     — remove matching lines
  summarize_memory  — facts grouped by category
  maintain_memory   — model-driven cleanup (merge duplicates, drop stale facts)

``MemoryFile.relevant`` also feeds the "Relevant Project Memory" block of the
system prompt.
"""

from __future__ import annotations

import datetime
import logging
import re
from collections import OrderedDict
from pathlib import Path

from .base import BaseTool
from ..core.arguments import (
    ForgetMemoryArgs, MaintainMemoryArgs, PersistentMemoryArgs, QueryMemoryArgs,
    SummarizeMemoryArgs,
)
from ..core.models import ToolResult
from ..core.tool_context import ToolContext

logger = logging.getLogger(__name__)

_ENTRY_RE = re.compile(r"^- \[(?P<date>[^\]]+)\] \[(?P<category>[^\]]+)\] (?P<fact>.*)$")
_WORD_RE = re.compile(r"[a-z0-9_]{3,}")


class MemoryFile:
    """Line-oriented access to the memory file."""

    def __init__(self, path: Path):
        self.path = path

    def entries(self) -> list[str]:
        if not self.path.is_file():
            return []
        return [l for l in self.path.read_text(encoding="utf-8").splitlines() if l.strip()]

    def append(self, fact: str, category: str) -> str:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        today = datetime.date.today().isoformat()
        line = f"- [{today}] [{category}] {fact}"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        return line

    def search(self, query: str) -> list[str]:
        keywords = query.lower().split()
        return [l for l in self.entries() if all(k in l.lower() for k in keywords)]

    def remove(self, pattern: str) -> int:
        lines = self.entries()
        kept = [l for l in lines if pattern.lower() not in l.lower()]
        removed = len(lines) - len(kept)
        if removed:
            self.rewrite(kept)
        return removed

    def relevant(self, query: str, limit: int = 5) -> list[str]:
        """Fact lines sharing the most words with ``query``, best first."""
        words = set(_WORD_RE.findall(query.lower()))
        if not words:
            return []
        scored = []
        for position, line in enumerate(self.entries()):
            if not line.startswith("- ["):
                continue
            score = len(words & set(_WORD_RE.findall(line.lower())))
            if score:
                scored.append((-score, position, line))
        return [line for _, _, line in sorted(scored)[:limit]]

    def rewrite(self, lines: list[str]) -> None:
        self.path.write_text("".join(l + "\n" for l in lines), encoding="utf-8")


def _memory(ctx: ToolContext) -> MemoryFile:
    return MemoryFile(ctx.resolve(ctx.settings.memory_file))


class PersistentMemoryTool(BaseTool):
    name = "persistent_memory"
    description = (
        "Save a durable fact about this project (conventions, commands, decisions) "
        "so it is available in later sessions."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "fact": {"type": "string", "description": "The fact to remember"},
            "category": {"type": "string", "description": "Short category label (default 'general')"},
        },
        "required": ["fact"],
    }

    async def execute(self, args: PersistentMemoryArgs, ctx: ToolContext) -> ToolResult:
        entry = f"[{args.category}] {args.fact}"
        if ctx.dry_run:
            return self._dry_run(f"[Dry Run] Would save fact: {entry}", ctx)
        memory = _memory(ctx)
        memory.append(args.fact, args.category)
        return self._success(
            f"Fact saved to {args.category}: {args.fact}", ctx,
            path=str(memory.path), category=args.category,
        )


class QueryMemoryTool(BaseTool):
    name = "query_memory"
    description = "Search saved project facts by keywords."
    input_schema = {
        "type": "object",
        "properties": {"query": {"type": "string"}},
        "required": ["query"],
    }

    async def execute(self, args: QueryMemoryArgs, ctx: ToolContext) -> ToolResult:
        memory = _memory(ctx)
        if not memory.path.is_file():
            return self._success("No memory file found.", ctx, match_count=0)
        matches = memory.search(args.query)
        if not matches:
            return self._success("No matching memory entries found.", ctx, match_count=0)
        return self._success(
            "Matching memory entries:\n" + "\n".join(matches), ctx, match_count=len(matches),
        )


class ForgetMemoryTool(BaseTool):
    name = "forget_memory"
    description = "Remove saved facts containing a pattern (case-insensitive)."
    input_schema = {
        "type": "object",
        "properties": {"pattern": {"type": "string"}},
        "required": ["pattern"],
    }

    async def execute(self, args: ForgetMemoryArgs, ctx: ToolContext) -> ToolResult:
        memory = _memory(ctx)
        if not memory.path.is_file():
            return self._success("No memory file found.", ctx, removed_count=0)
        if ctx.dry_run:
            count = len([l for l in memory.entries() if args.pattern.lower() in l.lower()])
            return self._dry_run(
                f"[Dry Run] Would remove {count} entry(ies) matching \"{args.pattern}\".", ctx,
            )
        removed = memory.remove(args.pattern)
        if not removed:
            return self._success(f"No entries matched \"{args.pattern}\".", ctx, removed_count=0)
        return self._success(
            f"Successfully removed {removed} entry(ies) matching \"{args.pattern}\".",
            ctx, removed_count=removed,
        )


class SummarizeMemoryTool(BaseTool):
    name = "summarize_memory"
    description = "Show every saved fact grouped by category."
    input_schema = {"type": "object", "properties": {}}

    async def execute(self, args: SummarizeMemoryArgs, ctx: ToolContext) -> ToolResult:
        memory = _memory(ctx)
        entries = memory.entries()
        if not entries:
            return self._success("No memory file found to summarize.", ctx)

        groups: "OrderedDict[str, list[str]]" = OrderedDict()
        for line in entries:
            match = _ENTRY_RE.match(line)
            category = match.group("category") if match else "uncategorized"
            fact = match.group("fact") if match else line.lstrip("- ")
            groups.setdefault(category, []).append(fact)

        parts = []
        for category, facts in groups.items():
            parts.append(f"## {category}")
            parts.extend(f"- {fact}" for fact in facts)
        return self._success(
            "Current Memory Contents:\n" + "\n".join(parts), ctx,
            categories=len(groups), entries=len(entries),
        )


MAINTENANCE_PROMPT = """You maintain a list of project facts. Clean it up:

1. Merge duplicate facts.
2. Resolve contradictions by keeping the most recent or most detailed fact.
3. Remove outdated or redundant facts.
4. Keep the format: - [date] [category] fact
5. Keep category names consistent.
6. Reply with ONLY the cleaned-up list, one fact per line. If nothing needs to change, reply with the list unchanged.

CURRENT MEMORY ENTRIES:
{entries}
"""


class MaintainMemoryTool(BaseTool):
    name = "maintain_memory"
    description = (
        "Clean up the project memory: merge duplicates, resolve contradictions "
        "and remove outdated facts, using the model."
    )
    input_schema = {"type": "object", "properties": {}}

    async def execute(self, args: MaintainMemoryArgs, ctx: ToolContext) -> ToolResult:
        memory = _memory(ctx)
        if not memory.path.is_file():
            return self._success("No memory file found to maintain.", ctx)
        entries = memory.entries()
        if not entries:
            return self._success("Memory is empty, nothing to maintain.", ctx)
        if ctx.complete is None:
            return self._error("Memory maintenance needs a model connection.", ctx)

        reply = await ctx.complete(MAINTENANCE_PROMPT.format(entries="\n".join(entries)))
        cleaned = [l.strip() for l in _strip_fence(reply).splitlines() if l.strip()]
        if not cleaned or cleaned == entries:
            return self._success("Memory maintenance complete. No changes were necessary.", ctx)

        if ctx.dry_run:
            return self._dry_run(
                f"[Dry Run] Would rewrite memory from {len(entries)} to {len(cleaned)} entries.", ctx,
            )
        memory.rewrite(cleaned)
        logger.info(f"Memory maintained: {len(entries)} -> {len(cleaned)} entries")
        return self._success(
            "Memory maintenance complete. Memory has been cleaned up and consolidated.", ctx,
            original_entries=len(entries), new_entries=len(cleaned),
        )


def _strip_fence(text: str) -> str:
    """Drop a surrounding ``` fence if the model wrapped its answer in one."""
    stripped = text.strip()
    if stripped.startswith("```") and stripped.endswith("```"):
        lines = stripped.splitlines()[1:-1]
        return "\n".join(lines)
    return stripped
