"""
Search Tool — content search via ripgrep (rg) with a Python re fallback.
"""

from __future__ import annotations
import fnmatch
import re
import shutil
from pathlib import Path

from .base import BaseTool
from .files import is_ignored, load_ignore_spec
from .shell import run_command
from ..core.arguments import SearchCodebaseArgs
from ..core.models import ToolResult
from ..core.tool_context import ToolContext

SEARCH_TIMEOUT = 30.0
MAX_PATTERN_LENGTH = 1000
MAX_MATCHES = 500


class SearchCodebaseTool(BaseTool):
    name = "search_codebase"
    description = (
        "Search file contents in the workspace with a regular expression. "
        "Optional `include` glob (e.g. '*.py') and `path` to narrow the search. "
        "Returns path:line:text matches."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regex pattern to search for"},
            "include": {"type": "string", "description": "Glob filter for file names"},
            "path": {"type": "string", "description": "Directory to search (default: workspace)"},
        },
        "required": ["pattern"],
    }

    def __init__(self, use_ripgrep: bool = True):
        self._has_rg = use_ripgrep and shutil.which("rg") is not None

    async def execute(self, args: SearchCodebaseArgs, ctx: ToolContext) -> ToolResult:
        if len(args.pattern) > MAX_PATTERN_LENGTH:
            return self._error(
                f"Pattern too long ({len(args.pattern)} chars). Maximum allowed: {MAX_PATTERN_LENGTH}", ctx,
            )
        try:
            compiled = re.compile(args.pattern)
        except re.error as e:
            return self._error(f"Invalid regex pattern: {e}", ctx)

        root = ctx.resolve(args.path) if args.path else ctx.workdir
        if not root.exists():
            return self._error(f"Error: Path not found: {args.path}", ctx)

        if self._has_rg:
            return await self._search_rg(args, root, ctx)
        return self._search_python(compiled, args, root, ctx)

    async def _search_rg(self, args: SearchCodebaseArgs, root: Path, ctx: ToolContext) -> ToolResult:
        cmd = ["rg", "-n", "--no-heading", "--color", "never"]
        if args.include:
            cmd.extend(["--glob", args.include])
        cmd.extend(["--", args.pattern, "."])

        out = await run_command(cmd, root, SEARCH_TIMEOUT, ctx.abort_signal)
        if out.aborted:
            return self._error("aborted", ctx)
        if out.timed_out:
            return self._error(f"Search timed out after {SEARCH_TIMEOUT:g} seconds", ctx)
        if out.exit_code == 1 and not out.stdout.strip():
            return self._success("No matches found", ctx, match_count=0)
        if out.exit_code not in (0, 1):
            return self._error(f"rg error: {out.stderr.strip()}", ctx, exit_code=out.exit_code)

        lines = [l[2:] if l.startswith("./") else l for l in out.stdout.splitlines()]
        return self._render(lines, ctx)

    def _search_python(self, compiled: re.Pattern, args: SearchCodebaseArgs,
                       root: Path, ctx: ToolContext) -> ToolResult:
        workdir = ctx.workdir
        spec = load_ignore_spec(workdir)
        files = [root] if root.is_file() else sorted(root.rglob("*"))

        results: list[str] = []
        for fpath in files:
            if not fpath.is_file():
                continue
            rel = fpath.relative_to(root).as_posix() if fpath != root else fpath.name
            if any(is_ignored(part, part, True, None) for part in Path(rel).parts[:-1]):
                continue
            if is_ignored(rel, fpath.name, False, spec):
                continue
            if args.include and not fnmatch.fnmatch(fpath.name, args.include):
                continue
            try:
                text = fpath.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for lineno, line in enumerate(text.split("\n"), start=1):
                if compiled.search(line):
                    results.append(f"{rel}:{lineno}:{line}")
            if len(results) >= MAX_MATCHES:
                break

        if not results:
            return self._success("No matches found", ctx, match_count=0)
        return self._render(results, ctx)

    def _render(self, lines: list[str], ctx: ToolContext) -> ToolResult:
        total = len(lines)
        output = "\n".join(lines[:MAX_MATCHES])
        if total > MAX_MATCHES:
            output += f"\n[{total - MAX_MATCHES} more matches truncated]"
        limit = ctx.settings.max_output_chars
        if len(output) > limit:
            output = output[:limit] + "\n[Output truncated]"
        return self._success(output, ctx, match_count=total)
