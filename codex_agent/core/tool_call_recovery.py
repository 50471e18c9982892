"""
Tool-call recovery from freeform model output.

Some models (or some provider paths) never emit native tool calls and instead
write the invocation into the message text: as a bare JSON object, inside a
fenced code block, as several JSON objects glued together, or as a raw
``*** Begin Patch`` block. ``ToolCallRecoverer`` turns such content back into
validated ``ToolCall`` objects. The first strategy that yields anything wins.

Recovered ids carry a prefix naming the strategy that produced them, so a
transcript shows how each call was reconstructed.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from enum import Enum
from typing import Any, Optional

from .arguments import GENERIC_REQUIRED, ArgValidator, ExecArgs, to_argv
from .json_splitter import split_json_objects, try_parse_json
from .models import ToolCall
from .tool_names import APPLY_PATCH, EXEC_TOOLS, SHELL, NameNormalizer

logger = logging.getLogger(__name__)


class RecoveryPath(Enum):
    DIRECT = "call_direct"
    FENCED = "call_mb"
    MULTI = "call_multi"
    PATCH = "call_raw"


_FENCE_RE = re.compile(r"```(json|bash|shell|sh)[ \t]*\n(.*?)\n?```", re.DOTALL)
_PATCH_RE = re.compile(r"\*\*\* Begin Patch.*?\*\*\* End Patch", re.DOTALL)

# Bare-argument objects are mapped to a tool by the first key that identifies it.
_INFERENCE_ORDER = (
    (("command", "cmd", "patch"), SHELL),
    (("pattern",), "search_codebase"),
    (("query",), "query_memory"),
    (("start_line", "end_line"), "read_file_lines"),
    (("content",), "write_file"),
    (("depth",), "list_files_recursive"),
    (("fact",), "persistent_memory"),
    (("path",), "read_file"),
)


def _new_id(path: RecoveryPath, position: int) -> str:
    return f"{path.value}_{uuid.uuid4().hex[:9]}_{position}"


def infer_tool_name(payload: dict) -> Optional[str]:
    """Guess which tool a bare argument object was meant for."""
    for keys, name in _INFERENCE_ORDER:
        if any(k in payload for k in keys):
            return name
    return None


class ToolCallRecoverer:
    """Extracts tool calls from message content that has no native ones."""

    def __init__(
        self,
        normalizer: Optional[NameNormalizer] = None,
        validator: Optional[ArgValidator] = None,
    ):
        self._normalizer = normalizer or NameNormalizer()
        self._validator = validator or ArgValidator(self._normalizer)

    @staticmethod
    def looks_like_tool_call(content: str) -> bool:
        if not content:
            return False
        return "{" in content or "```" in content or "*** Begin Patch" in content

    # ── Candidate normalization ─────────────────────────────────

    def normalize_candidate(self, candidate: Any, call_id: str) -> Optional[ToolCall]:
        """Validate one decoded object. Returns None when it is not a usable call."""
        if not isinstance(candidate, dict):
            return None

        name = candidate.get("name")
        if isinstance(name, str) and name.strip():
            if "arguments" in candidate:
                arguments = candidate["arguments"]
            else:
                arguments = {k: v for k, v in candidate.items() if k != "name"}
            raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
            return self._build(name, raw, call_id)

        if not any(k in candidate for k in GENERIC_REQUIRED + ("start_line", "end_line", "content")):
            return None
        inferred = infer_tool_name(candidate)
        if inferred is None:
            return None
        return self._build(inferred, json.dumps(candidate), call_id)

    def _build(self, name: str, raw: str, call_id: str) -> Optional[ToolCall]:
        canonical = self._normalizer.normalize(name)
        result = self._validator.validate(canonical, raw)
        if not result.ok:
            logger.debug(f"Discarding recovered candidate {canonical!r}: {result.error}")
            return None

        parsed = result.single
        if canonical in EXEC_TOOLS or isinstance(parsed, ExecArgs):
            if isinstance(parsed, ExecArgs):
                return ToolCall(id=call_id, name=SHELL,
                                arguments=json.dumps(parsed.to_dict()),
                                parsed_arguments=parsed)
            return ToolCall(id=call_id, name=SHELL, arguments=raw)
        return ToolCall(id=call_id, name=canonical, arguments=raw, parsed_arguments=parsed)

    # ── Strategies ──────────────────────────────────────────────

    def _from_direct(self, content: str) -> list[ToolCall]:
        value, ok = try_parse_json(content.strip())
        if not ok or not isinstance(value, dict) or "name" not in value:
            return []
        call = self.normalize_candidate(value, _new_id(RecoveryPath.DIRECT, 0))
        return [call] if call else []

    def _from_fences(self, content: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for match in _FENCE_RE.finditer(content):
            lang, body = match.group(1), match.group(2).strip()
            if not body:
                continue

            if lang == "json":
                value, ok = try_parse_json(body)
                if ok:
                    candidates = value if isinstance(value, list) else [value]
                else:
                    candidates = split_json_objects(body).objects
                for candidate in candidates:
                    call = self.normalize_candidate(candidate, _new_id(RecoveryPath.FENCED, len(calls)))
                    if call:
                        calls.append(call)
                continue

            value, ok = try_parse_json(body)
            if ok:
                call = self.normalize_candidate(value, _new_id(RecoveryPath.FENCED, len(calls)))
                if call:
                    calls.append(call)
                    continue
            if "\n" in body:
                argv = ["bash", "-lc", body]
            else:
                argv, ok = to_argv(body)
                if not ok:
                    continue
            calls.append(ToolCall(
                id=_new_id(RecoveryPath.FENCED, len(calls)),
                name=SHELL,
                arguments=json.dumps({"cmd": argv}),
                parsed_arguments=ExecArgs(cmd=argv),
            ))
        return calls

    def _from_split(self, content: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for candidate in split_json_objects(content).objects:
            call = self.normalize_candidate(candidate, _new_id(RecoveryPath.MULTI, len(calls)))
            if call:
                calls.append(call)
        return calls

    def _from_patches(self, content: str, already: list[ToolCall]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for match in _PATCH_RE.finditer(content):
            patch = match.group(0)
            arguments = json.dumps({"cmd": [APPLY_PATCH, patch]})
            if any(arguments == c.arguments for c in already + calls):
                continue
            calls.append(ToolCall(
                id=_new_id(RecoveryPath.PATCH, len(calls)),
                name=SHELL,
                arguments=arguments,
                parsed_arguments=ExecArgs(cmd=[APPLY_PATCH, patch]),
            ))
        return calls

    def recover(self, content: str) -> list[ToolCall]:
        """Return the tool calls hidden in ``content`` (possibly none)."""
        if not self.looks_like_tool_call(content):
            return []
        for strategy in (self._from_direct, self._from_fences, self._from_split):
            calls = strategy(content)
            if calls:
                logger.info(f"Recovered {len(calls)} tool call(s) from content via {strategy.__name__[6:]}")
                return calls
        calls = self._from_patches(content, [])
        if calls:
            logger.info(f"Recovered {len(calls)} raw patch(es) from content")
        return calls


def flatten_tool_calls(
    calls: list[ToolCall],
    validator: Optional[ArgValidator] = None,
) -> list[ToolCall]:
    """Split calls whose argument string folds several JSON payloads together.

    Each payload becomes its own call with id ``<parent>_<n>`` and the parent's
    name. If any payload fails validation the parent is kept intact so the
    dispatcher rejects it as one batch.
    """
    validator = validator or ArgValidator()
    flattened: list[ToolCall] = []
    for call in calls:
        _, ok = try_parse_json(call.arguments or "{}")
        if ok:
            flattened.append(call)
            continue
        split = split_json_objects(call.arguments or "")
        if split.count < 2 or not split.complete or split.errors:
            flattened.append(call)
            continue

        result = validator.validate(call.name, call.arguments)
        if not result.ok:
            flattened.append(call)
            continue
        for n, (payload, parsed) in enumerate(zip(split.objects, result.arguments)):
            flattened.append(ToolCall(
                id=f"{call.id}_{n}",
                name=call.name,
                arguments=json.dumps(payload),
                parsed_arguments=parsed,
            ))
        logger.debug(f"Flattened {call.id} into {split.count} calls")
    return flattened
