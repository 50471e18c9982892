"""
JSON helpers that report success as a value instead of raising.

``split_json_objects`` is a single left-to-right scan over text that may hold
several JSON documents glued together (``{...}{...}``), possibly surrounded by
prose. Quoted strings, including escaped quotes, are tracked so braces inside
them never change the depth.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

_OPENERS = "{["
_CLOSERS = "}]"


def try_parse_json(text: str) -> tuple[Any, bool]:
    """Parse ``text`` as JSON. Returns ``(value, True)`` or ``(None, False)``."""
    if not isinstance(text, str) or not text.strip():
        return None, False
    try:
        return json.loads(text), True
    except ValueError:
        return None, False


def try_parse_object(text: str) -> tuple[dict, bool]:
    """Like try_parse_json but only accepts a JSON object."""
    value, ok = try_parse_json(text)
    if ok and isinstance(value, dict):
        return value, True
    return {}, False


@dataclass
class SplitResult:
    """Outcome of splitting concatenated JSON."""
    objects: list[Any] = field(default_factory=list)
    spans: list[tuple[int, int]] = field(default_factory=list)
    remainder: str = ""          # unterminated trailing document, if any
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.remainder

    @property
    def count(self) -> int:
        return len(self.objects)


def _balanced_end(text: str, start: int) -> int:
    """Index just past the value opening at ``start``, or -1 if it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def _next_opener(text: str, start: int) -> int:
    positions = [p for p in (text.find(o, start) for o in _OPENERS) if p != -1]
    return min(positions) if positions else -1


def split_json_objects(text: str) -> SplitResult:
    """Split ``text`` into its top-level JSON objects/arrays, in source order.

    Non-JSON text between documents is skipped and reported in ``errors``.
    A document that is still open at end of input is returned as ``remainder``.
    """
    result = SplitResult()
    if not text:
        return result

    pos = 0
    length = len(text)
    while pos < length:
        ch = text[pos]
        if ch.isspace():
            pos += 1
            continue

        if ch not in _OPENERS:
            nxt = _next_opener(text, pos)
            stop = nxt if nxt != -1 else length
            result.errors.append(f"Skipped non-JSON text at offset {pos}: {text[pos:stop][:40]!r}")
            pos = stop
            continue

        end = _balanced_end(text, pos)
        if end == -1:
            result.remainder = text[pos:]
            break

        value, ok = try_parse_json(text[pos:end])
        if ok:
            result.objects.append(value)
            result.spans.append((pos, end))
        else:
            result.errors.append(f"Invalid JSON at offset {pos}: {text[pos:end][:40]!r}")
        pos = end

    return result
