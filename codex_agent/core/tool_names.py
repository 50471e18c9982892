"""
Tool-name canonicalization.

Models emit tool names with stray channel markers (``shell<|channel|>commentary``),
``---`` separators, ``__channel__`` suffixes and provider-specific aliases such as
``repo_browser.ls``. Everything is mapped to one canonical identifier before
dispatch and loop-guard bookkeeping.
"""

from __future__ import annotations

from typing import Mapping, Optional

SHELL = "shell"
APPLY_PATCH = "apply_patch"

# Canonical names that reach the command executor.
EXEC_TOOLS = frozenset({SHELL, APPLY_PATCH})

CANONICAL_TOOLS = frozenset({
    SHELL,
    APPLY_PATCH,
    "read_file",
    "read_file_lines",
    "write_file",
    "delete_file",
    "list_directory",
    "list_files_recursive",
    "search_codebase",
    "persistent_memory",
    "query_memory",
    "forget_memory",
    "summarize_memory",
    "maintain_memory",
    "fetch_url",
    "web_search",
    "semantic_search",
    "index_codebase",
})

DEFAULT_ALIASES: Mapping[str, str] = {
    "container.exec": SHELL,
    "repo_browser.exec": SHELL,
    "repo_browser.read_file": "read_file",
    "repo_browser.open_file": "read_file",
    "repo_browser.cat": "read_file",
    "repo_browser.write_file": "write_file",
    "repo_browser.read_file_lines": "read_file_lines",
    "repo_browser.list_files": "list_files_recursive",
    "repo_browser.print_tree": "list_files_recursive",
    "repo_browser.list_directory": "list_directory",
    "repo_browser.ls": "list_directory",
    "repo_browser.search": "search_codebase",
    "repo_browser.rm": "delete_file",
    "repo_browser.web_search": "web_search",
    "repo_browser.fetch_url": "fetch_url",
}

_NOISE_SEPARATORS = ("<|", "---", "__channel__")


def strip_name_noise(name: str) -> str:
    """Drop channel markers, ``---`` suffixes and surrounding whitespace."""
    cleaned = name or ""
    for sep in _NOISE_SEPARATORS:
        cleaned = cleaned.split(sep, 1)[0]
    return cleaned.strip()


class NameNormalizer:
    """Maps raw tool names to canonical ones. Idempotent on canonical input."""

    def __init__(self, extra_aliases: Optional[Mapping[str, str]] = None):
        self._aliases = dict(DEFAULT_ALIASES)
        if extra_aliases:
            self._aliases.update(extra_aliases)

    def normalize(self, name: str) -> str:
        cleaned = strip_name_noise(name)
        return self._aliases.get(cleaned, cleaned)

    def is_exec(self, name: str) -> bool:
        return self.normalize(name) in EXEC_TOOLS

    def is_known(self, name: str) -> bool:
        return self.normalize(name) in CANONICAL_TOOLS


_default_normalizer = NameNormalizer()


def normalize_tool_name(name: str) -> str:
    """Canonicalize ``name`` with the default alias table."""
    return _default_normalizer.normalize(name)
