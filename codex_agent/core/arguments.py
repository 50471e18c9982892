"""
Tool-argument validation.

Arguments arrive as a raw JSON string. They are validated once, at the
name-normalization boundary, into a tagged union of small dataclasses keyed by
canonical tool name. Fields the typed shape does not know about are kept in
``raw`` rather than widening the dataclasses.

The accepted shape is deliberately permissive: ``command``/``cmd`` may be a
string (tokenized with shell quoting) or an argv list, ``patch`` becomes a
synthetic ``["apply_patch", patch]`` command, and tool-specific fields such as
``path``, ``pattern``/``query``, ``fact``, ``start_line``/``end_line`` and
``depth`` are accepted for the file, search and memory tools.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar, Optional, Union

from .errors import ArgumentValidationError
from .json_splitter import split_json_objects, try_parse_json
from .tool_names import APPLY_PATCH, EXEC_TOOLS, NameNormalizer

logger = logging.getLogger(__name__)


# ── Tagged argument union ───────────────────────────────────────────

@dataclass(kw_only=True)
class ToolArguments:
    """Base of the argument union. ``raw`` holds unrecognized fields."""
    kind: ClassVar[str] = ""
    raw: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {k: v for k, v in asdict(self).items() if k != "raw" and v is not None}
        return data


@dataclass(kw_only=True)
class ExecArgs(ToolArguments):
    kind: ClassVar[str] = "shell"
    cmd: list[str]
    workdir: Optional[str] = None
    timeout: Optional[int] = None  # milliseconds

    @property
    def is_apply_patch(self) -> bool:
        return len(self.cmd) >= 2 and self.cmd[0] == APPLY_PATCH

    @property
    def patch_text(self) -> str:
        return self.cmd[1] if self.is_apply_patch else ""


@dataclass(kw_only=True)
class ReadFileArgs(ToolArguments):
    kind: ClassVar[str] = "read_file"
    path: str


@dataclass(kw_only=True)
class ReadFileLinesArgs(ToolArguments):
    kind: ClassVar[str] = "read_file_lines"
    path: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None


@dataclass(kw_only=True)
class WriteFileArgs(ToolArguments):
    kind: ClassVar[str] = "write_file"
    path: str
    content: str


@dataclass(kw_only=True)
class DeleteFileArgs(ToolArguments):
    kind: ClassVar[str] = "delete_file"
    path: str


@dataclass(kw_only=True)
class ListDirectoryArgs(ToolArguments):
    kind: ClassVar[str] = "list_directory"
    path: str = "."


@dataclass(kw_only=True)
class ListFilesRecursiveArgs(ToolArguments):
    kind: ClassVar[str] = "list_files_recursive"
    path: str = "."
    depth: int = 3


@dataclass(kw_only=True)
class SearchCodebaseArgs(ToolArguments):
    kind: ClassVar[str] = "search_codebase"
    pattern: str
    include: Optional[str] = None
    path: Optional[str] = None


@dataclass(kw_only=True)
class PersistentMemoryArgs(ToolArguments):
    kind: ClassVar[str] = "persistent_memory"
    fact: str
    category: str = "general"


@dataclass(kw_only=True)
class QueryMemoryArgs(ToolArguments):
    kind: ClassVar[str] = "query_memory"
    query: str


@dataclass(kw_only=True)
class ForgetMemoryArgs(ToolArguments):
    kind: ClassVar[str] = "forget_memory"
    pattern: str


@dataclass(kw_only=True)
class SummarizeMemoryArgs(ToolArguments):
    kind: ClassVar[str] = "summarize_memory"


@dataclass(kw_only=True)
class MaintainMemoryArgs(ToolArguments):
    kind: ClassVar[str] = "maintain_memory"


@dataclass(kw_only=True)
class FetchUrlArgs(ToolArguments):
    kind: ClassVar[str] = "fetch_url"
    url: str


@dataclass(kw_only=True)
class WebSearchArgs(ToolArguments):
    kind: ClassVar[str] = "web_search"
    query: str
    max_results: int = 5


@dataclass(kw_only=True)
class SemanticSearchArgs(ToolArguments):
    kind: ClassVar[str] = "semantic_search"
    query: str
    limit: int = 5


@dataclass(kw_only=True)
class IndexCodebaseArgs(ToolArguments):
    kind: ClassVar[str] = "index_codebase"
    path: str = "."


@dataclass(kw_only=True)
class GenericArgs(ToolArguments):
    """Arguments for a tool name outside the canonical table."""
    kind: ClassVar[str] = "generic"
    values: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return dict(self.values)


AnyToolArguments = Union[
    ExecArgs, ReadFileArgs, ReadFileLinesArgs, WriteFileArgs, DeleteFileArgs,
    ListDirectoryArgs, ListFilesRecursiveArgs, SearchCodebaseArgs,
    PersistentMemoryArgs, QueryMemoryArgs, ForgetMemoryArgs, SummarizeMemoryArgs,
    MaintainMemoryArgs, FetchUrlArgs, WebSearchArgs, SemanticSearchArgs, IndexCodebaseArgs, GenericArgs,
]


# ── Coercion helpers ────────────────────────────────────────────────

def to_argv(value: Any) -> tuple[list[str], bool]:
    """Tokenize a command given as a string or list. Returns ``(argv, ok)``."""
    if isinstance(value, str):
        return _tokenize(value), bool(value.strip())
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        if len(value) == 1 and " " in value[0]:
            return _tokenize(value[0]), True
        return list(value), bool(value)
    return [], False


def _tokenize(command: str) -> list[str]:
    if " " not in command.strip():
        return [command.strip()] if command.strip() else []
    try:
        return shlex.split(command)
    except ValueError:
        # unbalanced quotes; fall back to whitespace tokens
        return command.split()


def _as_int(value: Any) -> tuple[int, bool]:
    if isinstance(value, bool):
        return 0, False
    if isinstance(value, int):
        return value, True
    if isinstance(value, float) and value.is_integer():
        return int(value), True
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip()), True
    return 0, False


def _coerce(kind: str, value: Any) -> tuple[Any, bool]:
    if kind == "str":
        return value, isinstance(value, str)
    if kind == "int":
        return _as_int(value)
    if kind == "argv":
        return to_argv(value)
    return value, True


def missing_message(fields: tuple[str, ...]) -> str:
    quoted = [f"'{f}'" for f in fields]
    if len(quoted) == 1:
        return f"Missing required property: {quoted[0]} must be provided"
    listed = ", ".join(quoted[:-1]) + f", or {quoted[-1]}"
    return f"Missing required property: one of {listed} must be provided"


# ── Per-tool shapes ─────────────────────────────────────────────────

@dataclass(frozen=True)
class _Shape:
    fields: dict
    required_any: tuple[str, ...] = ()
    required_all: tuple[str, ...] = ()
    aliases: dict = field(default_factory=dict)
    build: Optional[Callable[[dict, dict], tuple[Optional[ToolArguments], str]]] = None
    cls: Optional[type] = None


def _build_exec(values: dict, raw: dict) -> tuple[Optional[ToolArguments], str]:
    cmd = values.get("cmd") or values.get("command")
    if not cmd and values.get("patch"):
        cmd = [APPLY_PATCH, values["patch"]]
    if not cmd:
        return None, missing_message(("command", "cmd", "patch"))
    return ExecArgs(
        cmd=cmd,
        workdir=values.get("workdir"),
        timeout=values.get("timeout"),
        raw=raw,
    ), ""


def _build_generic(values: dict, raw: dict) -> tuple[Optional[ToolArguments], str]:
    if values.get("cmd") or values.get("command") or values.get("patch"):
        return _build_exec(values, raw)
    merged = {**values, **raw}
    return GenericArgs(values=merged, raw=raw), ""


_EXEC_FIELDS = {"command": "argv", "cmd": "argv", "patch": "str", "workdir": "str", "timeout": "int"}

GENERIC_REQUIRED = ("command", "cmd", "patch", "path", "pattern", "query", "fact", "depth")

SHAPES: dict[str, _Shape] = {
    "shell": _Shape(_EXEC_FIELDS, ("command", "cmd", "patch"), build=_build_exec),
    "read_file": _Shape({"path": "str"}, ("path",), cls=ReadFileArgs),
    "read_file_lines": _Shape(
        {"path": "str", "start_line": "int", "end_line": "int"},
        ("path",),
        aliases={"start": "start_line", "line_start": "start_line",
                 "end": "end_line", "line_end": "end_line"},
        cls=ReadFileLinesArgs,
    ),
    "write_file": _Shape({"path": "str", "content": "str"}, ("path",), ("content",), cls=WriteFileArgs),
    "delete_file": _Shape({"path": "str"}, ("path",), cls=DeleteFileArgs),
    "list_directory": _Shape({"path": "str"}, cls=ListDirectoryArgs),
    "list_files_recursive": _Shape({"path": "str", "depth": "int"}, cls=ListFilesRecursiveArgs),
    "search_codebase": _Shape(
        {"pattern": "str", "include": "str", "path": "str"},
        ("pattern", "query"),
        aliases={"query": "pattern"},
        cls=SearchCodebaseArgs,
    ),
    "persistent_memory": _Shape({"fact": "str", "category": "str"}, ("fact",), cls=PersistentMemoryArgs),
    "query_memory": _Shape({"query": "str"}, ("query",), cls=QueryMemoryArgs),
    "forget_memory": _Shape({"pattern": "str"}, ("pattern", "query"),
                            aliases={"query": "pattern"}, cls=ForgetMemoryArgs),
    "summarize_memory": _Shape({}, cls=SummarizeMemoryArgs),
    "maintain_memory": _Shape({}, cls=MaintainMemoryArgs),
    "fetch_url": _Shape({"url": "str"}, ("url",), cls=FetchUrlArgs),
    "web_search": _Shape({"query": "str", "max_results": "int"}, ("query",), cls=WebSearchArgs),
    "semantic_search": _Shape({"query": "str", "limit": "int"}, ("query",), cls=SemanticSearchArgs),
    "index_codebase": _Shape({"path": "str"}, cls=IndexCodebaseArgs),
}
SHAPES[APPLY_PATCH] = SHAPES["shell"]

_GENERIC_SHAPE = _Shape(
    {**_EXEC_FIELDS, "path": "str", "pattern": "str", "query": "str", "fact": "str",
     "category": "str", "include": "str", "depth": "int",
     "start_line": "int", "end_line": "int"},
    GENERIC_REQUIRED,
    build=_build_generic,
)


@dataclass
class ValidationResult:
    """``ok`` with one or more typed arguments, or an error message."""
    ok: bool
    arguments: list = field(default_factory=list)
    error: str = ""
    missing: tuple[str, ...] = ()

    @property
    def exception(self) -> Optional[ArgumentValidationError]:
        """The failure as an ArgumentValidationError, or None when ``ok``."""
        if self.ok:
            return None
        return ArgumentValidationError(self.error, self.missing)

    @property
    def single(self) -> Optional[ToolArguments]:
        return self.arguments[0] if len(self.arguments) == 1 else None

    @property
    def is_batch(self) -> bool:
        return len(self.arguments) > 1


class ArgValidator:
    """Validates raw argument strings against the shape for a canonical tool name."""

    def __init__(self, normalizer: Optional[NameNormalizer] = None):
        self._normalizer = normalizer or NameNormalizer()

    def shape_for(self, canonical_name: str) -> _Shape:
        return SHAPES.get(canonical_name, _GENERIC_SHAPE)

    def payloads(self, raw_arguments: str) -> tuple[list[dict], str]:
        """Decode the raw string into one or more argument objects."""
        text = (raw_arguments or "").strip() or "{}"
        value, ok = try_parse_json(text)
        if ok:
            if isinstance(value, dict):
                return [value], ""
            if isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
                return list(value), ""
            return [], f"Tool arguments must be a JSON object, got {type(value).__name__}"

        split = split_json_objects(text)
        if split.count and split.complete and not split.errors:
            if all(isinstance(v, dict) for v in split.objects):
                return list(split.objects), ""
        return [], f"Failed to parse tool arguments as JSON: {text[:200]}"

    def validate_payload(self, canonical_name: str, payload: dict) -> tuple[Optional[ToolArguments], str, tuple]:
        shape = self.shape_for(canonical_name)
        values: dict = {}
        raw: dict = {}
        for key, value in payload.items():
            target = shape.aliases.get(key, key)
            kind = shape.fields.get(target)
            if kind is None:
                raw[key] = value
                continue
            if value is None or target in values:
                continue
            coerced, ok = _coerce(kind, value)
            if not ok:
                return None, f"Invalid value for '{key}': expected {kind}", ()
            values[target] = coerced

        if shape.required_any and not any(f in values for f in shape.required_any):
            return None, missing_message(shape.required_any), shape.required_any
        absent = tuple(f for f in shape.required_all if f not in values)
        if absent:
            return None, missing_message(absent), absent

        if shape.build is not None:
            built, error = shape.build(values, raw)
            return built, error, ()
        return shape.cls(**values, raw=raw), "", ()

    def validate(self, name: str, raw_arguments: str) -> ValidationResult:
        """Validate ``raw_arguments`` for tool ``name``.

        Several concatenated payloads are validated independently; a failure
        on any of them fails the whole batch.
        """
        canonical = self._normalizer.normalize(name)
        payloads, error = self.payloads(raw_arguments)
        if error:
            return ValidationResult(ok=False, error=error)

        built: list[ToolArguments] = []
        for index, payload in enumerate(payloads):
            args, error, missing = self.validate_payload(canonical, payload)
            if args is None:
                if len(payloads) > 1:
                    error = f"Argument object {index + 1} of {len(payloads)}: {error}"
                logger.debug(f"Argument validation failed for {canonical}: {error}")
                return ValidationResult(ok=False, error=error, missing=missing)
            built.append(args)
        return ValidationResult(ok=True, arguments=built)


def is_exec_tool(canonical_name: str) -> bool:
    return canonical_name in EXEC_TOOLS
