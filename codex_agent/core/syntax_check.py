"""
Quick per-extension syntax checks, run on files a patch has just touched.

Meant to catch trivial breakage (unbalanced braces, truncated edits), not to
lint. Unknown extensions are always considered valid.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

NODE_CHECK_TIMEOUT = 15.0


@dataclass
class SyntaxCheck:
    is_valid: bool
    error: Optional[str] = None


def _check_python(text: str, path: Path) -> SyntaxCheck:
    try:
        compile(text, str(path), "exec")
    except SyntaxError as e:
        return SyntaxCheck(False, f"line {e.lineno}: {e.msg}")
    return SyntaxCheck(True)


def _check_json(text: str, path: Path) -> SyntaxCheck:
    try:
        json.loads(text)
    except ValueError as e:
        return SyntaxCheck(False, str(e))
    return SyntaxCheck(True)


def _check_yaml(text: str, path: Path) -> SyntaxCheck:
    try:
        list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        return SyntaxCheck(False, str(e))
    return SyntaxCheck(True)


async def _check_javascript(path: Path) -> SyntaxCheck:
    node = shutil.which("node")
    if node is None:
        return SyntaxCheck(True)
    process = await asyncio.create_subprocess_exec(
        node, "--check", str(path),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=NODE_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.communicate()
        logger.debug(f"node --check timed out for {path}")
        return SyntaxCheck(True)
    if process.returncode != 0:
        return SyntaxCheck(False, stderr.decode("utf-8", errors="replace").strip())
    return SyntaxCheck(True)


_TEXT_CHECKERS = {
    ".py": _check_python,
    ".json": _check_json,
    ".yaml": _check_yaml,
    ".yml": _check_yaml,
}
_JS_EXTENSIONS = frozenset({".js", ".cjs", ".mjs"})


async def validate_file_syntax(path: str | Path) -> SyntaxCheck:
    """Check one file. Missing or unreadable files are reported as invalid."""
    path = Path(path)
    ext = path.suffix.lower()
    if ext not in _TEXT_CHECKERS and ext not in _JS_EXTENSIONS:
        return SyntaxCheck(True)
    if not path.is_file():
        return SyntaxCheck(False, f"file not found: {path}")
    if ext in _JS_EXTENSIONS:
        return await _check_javascript(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return SyntaxCheck(False, str(e))
    return _TEXT_CHECKERS[ext](text, path)
