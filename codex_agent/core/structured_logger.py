"""
Structured Logger — JSON or human log output with per-run context fields.

Two output modes:

- **JSON mode** (``CODEX_LOG_FORMAT=json`` or ``logging.format: json``): each
  line is a JSON object.
- **Human mode** (default): traditional format with a ``[run_id]`` prefix.

The active run id and tool name live in a ``ContextVar`` so concurrently
dispatched tool calls each log with their own fields.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

DEFAULT_ERROR_LOG = "codex.error.log"
HUMAN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
HUMAN_DATEFMT = "%H:%M:%S"


# ── LogContext ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogContext:
    """Immutable bag of contextual fields attached to every log line."""
    run_id: str = ""
    tool_name: str = ""
    provider_name: str = ""


_current_context: contextvars.ContextVar[LogContext] = contextvars.ContextVar(
    "codex_log_context", default=LogContext(),
)


def current_log_context() -> LogContext:
    return _current_context.get()


def bind_log_context(**fields: Any) -> contextvars.Token:
    """Override fields for the current task. Returns a token for ``reset_log_context``."""
    return _current_context.set(replace(_current_context.get(), **fields))


def reset_log_context(token: contextvars.Token) -> None:
    _current_context.reset(token)


# ── JSON formatter ──────────────────────────────────────────────────

class StructuredFormatter(logging.Formatter):
    """Emits each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for ctx_field in ("run_id", "tool_name", "provider_name"):
            val = getattr(record, ctx_field, "")
            if val:
                entry[ctx_field] = val

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ── Human-readable formatter ───────────────────────────────────────

class HumanFormatter(logging.Formatter):
    """Traditional format with optional [run_id] prefix."""

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None):
        super().__init__(fmt=fmt or HUMAN_FORMAT, datefmt=datefmt or HUMAN_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        run_id = getattr(record, "run_id", "")
        if run_id:
            head, sep, tail = formatted.partition(": ")
            formatted = f"{head}{sep}[{run_id}] {tail}" if sep else formatted
        return formatted


# ── Context filter ──────────────────────────────────────────────────

class ContextFilter(logging.Filter):
    """Copies the current LogContext onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _current_context.get()
        record.run_id = getattr(record, "run_id", "") or ctx.run_id
        record.tool_name = getattr(record, "tool_name", "") or ctx.tool_name
        record.provider_name = getattr(record, "provider_name", "") or ctx.provider_name
        return True


# ── Module-level setup function ─────────────────────────────────────

_VERBOSITY_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def level_for_verbosity(verbosity: int, default: str = "WARNING") -> int:
    """``-v`` -> INFO, ``-vv`` -> DEBUG; otherwise the configured default."""
    if verbosity <= 0:
        return getattr(logging, str(default).upper(), logging.WARNING)
    return _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)


def setup_logging(
    verbosity: int = 0,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
    default_level: str = "WARNING",
) -> None:
    """
    Configure the root logger.

    Parameters
    ----------
    verbosity : int
        Count of ``-v`` flags.
    log_format : str or None
        ``"json"`` or ``"human"``. If None, read ``CODEX_LOG_FORMAT``.
    log_file : str or None
        Optional file that receives WARNING and above.
    default_level : str
        Level used when ``verbosity`` is 0.
    """
    if log_format is None:
        log_format = os.getenv("CODEX_LOG_FORMAT", "human")
    json_mode = str(log_format).lower() == "json"

    root = logging.getLogger()
    root.setLevel(level_for_verbosity(verbosity, default_level))

    # Remove existing handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    def _formatter() -> logging.Formatter:
        if json_mode:
            return StructuredFormatter(datefmt="%Y-%m-%dT%H:%M:%S")
        return HumanFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(_formatter())
    handler.addFilter(ContextFilter())
    root.addHandler(handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(_formatter())
        file_handler.addFilter(ContextFilter())
        root.addHandler(file_handler)

    # Quiet noisy third-party loggers
    for noisy in ("httpx", "httpcore", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(max(root.level, logging.WARNING))
