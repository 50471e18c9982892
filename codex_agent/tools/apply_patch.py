"""
Patch engine for the ``*** Begin Patch`` envelope format.

    *** Begin Patch
    *** Add File: path/new.py
    +print("hi")
    *** Update File: path/old.py
    *** Move to: path/renamed.py
    @@ def main():
    -    return 1
    +    return 2
    *** Delete File: path/gone.py
    *** End Patch

All hunks are resolved against the current file contents before anything is
written, so a patch whose context does not match leaves the tree untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ..core.errors import PatchError

logger = logging.getLogger(__name__)

PATCH_PREFIX = "*** Begin Patch"
PATCH_SUFFIX = "*** End Patch"
ADD_FILE_PREFIX = "*** Add File: "
DELETE_FILE_PREFIX = "*** Delete File: "
UPDATE_FILE_PREFIX = "*** Update File: "
MOVE_FILE_TO_PREFIX = "*** Move to: "
END_OF_FILE_PREFIX = "*** End of File"

_FILE_HEADERS = (ADD_FILE_PREFIX, DELETE_FILE_PREFIX, UPDATE_FILE_PREFIX)


class ActionType(Enum):
    ADD = "add"
    DELETE = "delete"
    UPDATE = "update"


@dataclass
class Chunk:
    anchor: Optional[str] = None
    old_lines: list[str] = field(default_factory=list)
    new_lines: list[str] = field(default_factory=list)
    at_eof: bool = False

    @property
    def empty(self) -> bool:
        return not self.old_lines and not self.new_lines


@dataclass
class PatchAction:
    type: ActionType
    path: str
    content: str = ""
    chunks: list[Chunk] = field(default_factory=list)
    move_to: Optional[str] = None


@dataclass
class PatchSummary:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def touched(self) -> list[str]:
        """Files that exist after the patch (candidates for syntax checks)."""
        return self.added + self.modified

    def render(self) -> str:
        lines = ["Done!"]
        lines += [f"A {p}" for p in self.added]
        lines += [f"M {p}" for p in self.modified]
        lines += [f"D {p}" for p in self.deleted]
        return "\n".join(lines)


# ── Parsing ─────────────────────────────────────────────────────────

def _patch_lines(text: str) -> list[str]:
    lines = text.strip().splitlines()
    if not lines or lines[0].strip() != PATCH_PREFIX:
        raise PatchError(f"Invalid patch: must start with {PATCH_PREFIX!r}")
    if lines[-1].strip() != PATCH_SUFFIX:
        raise PatchError(f"Invalid patch: must end with {PATCH_SUFFIX!r}")
    return lines[1:-1]


def _parse_update_body(lines: list[str], start: int, path: str) -> tuple[list[Chunk], int]:
    chunks: list[Chunk] = []
    current: Optional[Chunk] = None
    index = start
    while index < len(lines):
        line = lines[index]
        if line.startswith(_FILE_HEADERS):
            break
        if line.strip().startswith("@@"):
            if current is not None and not current.empty:
                chunks.append(current)
            anchor = line.strip()[2:].strip()
            current = Chunk(anchor=anchor or None)
        elif line.strip() == END_OF_FILE_PREFIX:
            if current is not None:
                current.at_eof = True
        elif not line and (index + 1 >= len(lines) or lines[index + 1].startswith(_FILE_HEADERS)):
            pass  # blank separator before the next file header
        else:
            if current is None:
                current = Chunk()
            marker, body = (line[:1], line[1:]) if line else (" ", "")
            if marker == "+":
                current.new_lines.append(body)
            elif marker == "-":
                current.old_lines.append(body)
            elif marker == " ":
                current.old_lines.append(body)
                current.new_lines.append(body)
            else:
                raise PatchError(f"Invalid line in update for {path}: {line!r}")
        index += 1
    if current is not None and not current.empty:
        chunks.append(current)
    if not chunks:
        raise PatchError(f"Update for {path} contains no hunks")
    return chunks, index


def parse_patch(text: str) -> list[PatchAction]:
    """Parse patch text into actions. Raises PatchError on malformed input."""
    lines = _patch_lines(text)
    actions: list[PatchAction] = []
    seen: set[str] = set()
    index = 0
    while index < len(lines):
        line = lines[index]
        if not line.strip():
            index += 1
            continue

        if line.startswith(UPDATE_FILE_PREFIX):
            path = line[len(UPDATE_FILE_PREFIX):].strip()
            index += 1
            move_to = None
            if index < len(lines) and lines[index].startswith(MOVE_FILE_TO_PREFIX):
                move_to = lines[index][len(MOVE_FILE_TO_PREFIX):].strip()
                index += 1
            chunks, index = _parse_update_body(lines, index, path)
            action = PatchAction(ActionType.UPDATE, path, chunks=chunks, move_to=move_to)
        elif line.startswith(ADD_FILE_PREFIX):
            path = line[len(ADD_FILE_PREFIX):].strip()
            index += 1
            body: list[str] = []
            while index < len(lines) and not lines[index].startswith(_FILE_HEADERS):
                added = lines[index]
                if not added.startswith("+"):
                    raise PatchError(f"Invalid line in added file {path}: {added!r}")
                body.append(added[1:])
                index += 1
            action = PatchAction(ActionType.ADD, path, content="\n".join(body) + "\n")
        elif line.startswith(DELETE_FILE_PREFIX):
            path = line[len(DELETE_FILE_PREFIX):].strip()
            index += 1
            action = PatchAction(ActionType.DELETE, path)
        else:
            raise PatchError(f"Unknown line while parsing patch: {line!r}")

        if action.path in seen:
            raise PatchError(f"Duplicate path in patch: {action.path}")
        seen.add(action.path)
        actions.append(action)
    return actions


def identify_files_needed(text: str) -> list[str]:
    """Paths the patch reads (updated or deleted files)."""
    result: list[str] = []
    for line in text.splitlines():
        for prefix in (UPDATE_FILE_PREFIX, DELETE_FILE_PREFIX):
            if line.startswith(prefix):
                path = line[len(prefix):].strip()
                if path not in result:
                    result.append(path)
    return result


def identify_files_added(text: str) -> list[str]:
    return [
        line[len(ADD_FILE_PREFIX):].strip()
        for line in text.splitlines()
        if line.startswith(ADD_FILE_PREFIX)
    ]


def affected_paths(text: str) -> list[str]:
    """Every path a patch would leave on disk, for post-patch checks."""
    paths: list[str] = []
    lines = text.splitlines()
    for i, line in enumerate(lines):
        if line.startswith(ADD_FILE_PREFIX):
            paths.append(line[len(ADD_FILE_PREFIX):].strip())
        elif line.startswith(UPDATE_FILE_PREFIX):
            nxt = lines[i + 1] if i + 1 < len(lines) else ""
            if nxt.startswith(MOVE_FILE_TO_PREFIX):
                paths.append(nxt[len(MOVE_FILE_TO_PREFIX):].strip())
            else:
                paths.append(line[len(UPDATE_FILE_PREFIX):].strip())
    return paths


# ── Applying hunks ──────────────────────────────────────────────────

def _find_sequence(lines: list[str], needle: list[str], start: int, at_eof: bool) -> int:
    if not needle:
        return len(lines) if at_eof else start
    normalizers = (lambda s: s, str.rstrip, str.strip)
    for norm in normalizers:
        target = [norm(n) for n in needle]
        if at_eof:
            tail = len(lines) - len(needle)
            if tail >= start and [norm(l) for l in lines[tail:]] == target:
                return tail
        for i in range(start, len(lines) - len(needle) + 1):
            if [norm(l) for l in lines[i:i + len(needle)]] == target:
                return i
    return -1


def apply_chunks(original: str, chunks: list[Chunk], path: str = "") -> str:
    """Return ``original`` with every chunk applied in order."""
    trailing_newline = original.endswith("\n")
    lines = original.split("\n")
    if trailing_newline:
        lines.pop()

    cursor = 0
    for chunk in chunks:
        if chunk.anchor:
            for i in range(cursor, len(lines)):
                if lines[i].strip() == chunk.anchor.strip():
                    cursor = i + 1
                    break
        index = _find_sequence(lines, chunk.old_lines, cursor, chunk.at_eof)
        if index == -1:
            expected = "\n".join(chunk.old_lines)
            raise PatchError(f"Failed to find expected lines in {path}:\n{expected}")
        lines[index:index + len(chunk.old_lines)] = chunk.new_lines
        cursor = index + len(chunk.new_lines)

    text = "\n".join(lines)
    return text + "\n" if trailing_newline or not original else text


def _resolve(workdir: Path, relative: str) -> Path:
    if Path(relative).is_absolute():
        raise PatchError(f"Patch paths must be relative: {relative}")
    return (workdir / relative).resolve()


def apply_patch(text: str, workdir: str | Path) -> PatchSummary:
    """Apply ``text`` under ``workdir``. Nothing is written if any hunk fails."""
    workdir = Path(workdir)
    actions = parse_patch(text)

    writes: dict[Path, str] = {}
    removals: list[Path] = []
    summary = PatchSummary()

    for action in actions:
        target = _resolve(workdir, action.path)
        if action.type is ActionType.ADD:
            if target.exists():
                raise PatchError(f"Add File Error: file already exists: {action.path}")
            writes[target] = action.content
            summary.added.append(action.path)
        elif action.type is ActionType.DELETE:
            if not target.is_file():
                raise PatchError(f"Delete File Error: missing file: {action.path}")
            removals.append(target)
            summary.deleted.append(action.path)
        else:
            if not target.is_file():
                raise PatchError(f"Update File Error: missing file: {action.path}")
            updated = apply_chunks(target.read_text(encoding="utf-8"), action.chunks, action.path)
            if action.move_to:
                writes[_resolve(workdir, action.move_to)] = updated
                removals.append(target)
                summary.modified.append(action.move_to)
            else:
                writes[target] = updated
                summary.modified.append(action.path)

    for path, content in writes.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    for path in removals:
        if path not in writes:
            path.unlink()

    logger.debug(
        f"Patch applied: {len(summary.added)} added, "
        f"{len(summary.modified)} modified, {len(summary.deleted)} deleted"
    )
    return summary
