"""
File tools — read, ranged read, write, delete and directory listings.

Relative paths resolve against the workspace. Listings honor the workspace
``.gitignore`` (via pathspec) plus a fixed set of always-skipped directories.
"""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional

import pathspec

from ..core.arguments import (
    DeleteFileArgs, ListDirectoryArgs, ListFilesRecursiveArgs, ReadFileArgs,
    ReadFileLinesArgs, WriteFileArgs,
)
from ..core.models import ToolResult
from ..core.tool_context import ToolContext
from .base import BaseTool

logger = logging.getLogger(__name__)

ALWAYS_SKIP_DIRS = frozenset({
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox",
})


def load_ignore_spec(root: Path) -> Optional[pathspec.PathSpec]:
    """Parse ``root/.gitignore`` if present."""
    gitignore = root / ".gitignore"
    if not gitignore.is_file():
        return None
    with open(gitignore, "r", encoding="utf-8", errors="replace") as f:
        return pathspec.PathSpec.from_lines("gitwildmatch", f)


def is_ignored(rel_path: str, name: str, is_dir: bool, spec: Optional[pathspec.PathSpec]) -> bool:
    if is_dir and name in ALWAYS_SKIP_DIRS:
        return True
    if spec is None:
        return False
    return spec.match_file(rel_path + "/" if is_dir else rel_path)


def _sorted_entries(directory: Path) -> list[Path]:
    """Directories first, then files, each alphabetically."""
    return sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


class ReadFileTool(BaseTool):
    name = "read_file"
    description = "Read the full contents of a file in the workspace."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path, relative to the workspace"},
        },
        "required": ["path"],
    }

    async def execute(self, args: ReadFileArgs, ctx: ToolContext) -> ToolResult:
        path = ctx.resolve(args.path)
        if not path.exists():
            return self._error(f"Error: File not found: {args.path}", ctx)
        if path.is_dir():
            return self._error(f"Error: {args.path} is a directory; use list_directory", ctx)
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return self._error(f"Error reading file: {e}", ctx)
        ctx.file_accessed(args.path)
        return self._success(content, ctx, path=args.path, size=len(content))


class ReadFileLinesTool(BaseTool):
    name = "read_file_lines"
    description = "Read a 1-based, inclusive line range from a file."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "start_line": {"type": "number", "description": "First line (1-based)"},
            "end_line": {"type": "number", "description": "Last line (inclusive)"},
        },
        "required": ["path", "start_line", "end_line"],
    }

    async def execute(self, args: ReadFileLinesArgs, ctx: ToolContext) -> ToolResult:
        path = ctx.resolve(args.path)
        if not path.is_file():
            return self._error(f"Error: File not found: {args.path}", ctx)
        lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
        start = max(0, (args.start_line or 1) - 1)
        end = min(len(lines), args.end_line if args.end_line is not None else len(lines))
        if start >= len(lines):
            return self._error(
                f"Error: start_line {start + 1} is past the end of {args.path} ({len(lines)} lines)", ctx,
            )
        ctx.file_accessed(args.path)
        return self._success(
            "\n".join(lines[start:end]), ctx,
            start_line=start + 1, end_line=end, total_lines=len(lines),
        )


class WriteFileTool(BaseTool):
    name = "write_file"
    description = "Write content to a file, creating parent directories and replacing any existing file."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
    }

    async def execute(self, args: WriteFileArgs, ctx: ToolContext) -> ToolResult:
        if ctx.dry_run:
            return self._dry_run(
                f"[Dry Run] Would write {len(args.content)} characters to {args.path}",
                ctx, path=args.path,
            )
        confirmation = await ctx.confirm(["write_file", args.path], is_edit=True)
        if not confirmation.approved:
            return self._error(confirmation.custom_deny_message or "aborted", ctx)

        path = ctx.resolve(args.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(args.content, encoding="utf-8")
        except OSError as e:
            return self._error(f"Error writing file: {e}", ctx)
        ctx.file_accessed(args.path)
        return self._success(
            f"Successfully wrote {len(args.content)} characters to {args.path}",
            ctx, path=args.path,
        )


class DeleteFileTool(BaseTool):
    name = "delete_file"
    description = "Delete a single file from the workspace."
    input_schema = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }

    async def execute(self, args: DeleteFileArgs, ctx: ToolContext) -> ToolResult:
        if ctx.dry_run:
            return self._dry_run(f"[Dry Run] Would delete file: {args.path}", ctx, path=args.path)
        confirmation = await ctx.confirm(["rm", args.path], is_edit=True)
        if not confirmation.approved:
            return self._error(confirmation.custom_deny_message or "aborted", ctx)

        path = ctx.resolve(args.path)
        if not path.exists():
            return self._error(f"Error: File not found: {args.path}", ctx)
        if path.is_dir():
            return self._error(f"Error: {args.path} is a directory", ctx)
        path.unlink()
        ctx.file_accessed(args.path)
        return self._success(f"Deleted {args.path}", ctx, path=args.path)


class ListDirectoryTool(BaseTool):
    name = "list_directory"
    description = "List the entries of one directory (directories first)."
    input_schema = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Directory (default '.')"}},
    }

    async def execute(self, args: ListDirectoryArgs, ctx: ToolContext) -> ToolResult:
        root = ctx.workdir
        directory = ctx.resolve(args.path)
        if not directory.is_dir():
            return self._error(f"Error: Directory not found: {args.path}", ctx)
        spec = load_ignore_spec(root)
        lines = []
        for entry in _sorted_entries(directory):
            is_dir = entry.is_dir()
            if is_ignored(_relative(entry, root), entry.name, is_dir, spec):
                continue
            lines.append(f"{'dir: ' if is_dir else 'file:'} {entry.name}")
        return self._success(
            "\n".join(lines) or "Directory is empty.", ctx,
            path=args.path, count=len(lines),
        )


class ListFilesRecursiveTool(BaseTool):
    name = "list_files_recursive"
    description = "Show the file tree under a directory, down to `depth` levels (default 3)."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "depth": {"type": "number"},
        },
    }

    async def execute(self, args: ListFilesRecursiveArgs, ctx: ToolContext) -> ToolResult:
        root = ctx.workdir
        start = ctx.resolve(args.path)
        if not start.exists():
            return self._error(f"Error: Path not found: {args.path}", ctx)
        spec = load_ignore_spec(root)
        lines: list[str] = []
        self._walk(start, root, 1, max(1, args.depth), spec, lines)
        return self._success(
            "\n".join(lines) or "No files found.", ctx,
            path=args.path, depth=args.depth,
        )

    def _walk(self, directory: Path, root: Path, level: int, depth: int,
              spec: Optional[pathspec.PathSpec], lines: list[str]) -> None:
        if level > depth:
            return
        try:
            entries = _sorted_entries(directory)
        except OSError as e:
            logger.debug(f"Cannot list {directory}: {e}")
            return
        indent = "  " * (level - 1)
        for entry in entries:
            is_dir = entry.is_dir()
            if is_ignored(_relative(entry, root), entry.name, is_dir, spec):
                continue
            if is_dir:
                lines.append(f"{indent}dir: {entry.name}/")
                self._walk(entry, root, level + 1, depth, spec, lines)
            else:
                lines.append(f"{indent}file: {entry.name}")
