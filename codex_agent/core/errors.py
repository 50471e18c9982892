"""
Error taxonomy for the turn engine.

Tool-side failures (bad arguments, a detected loop, a patch that broke a
file) are built as ToolExecutionError instances and turned into exit_code 1
ToolResults with ``ToolResult.from_error``; their message is what the model
reads. Provider-side classes are raised by adapters and by one-shot
completions, and read by the retry classifier.
"""

from __future__ import annotations

from typing import Optional


class CodexAgentError(Exception):
    """Base class for every error raised by the engine."""


# ── Tool-side ───────────────────────────────────────────────────────

class ToolExecutionError(CodexAgentError):
    """A tool call finished with a non-zero exit code."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


class ArgumentValidationError(ToolExecutionError):
    """Tool arguments did not match any accepted shape."""

    def __init__(self, message: str, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = missing


class LoopDetectedError(ToolExecutionError):
    """The same failing tool call was issued again past the threshold."""

    def __init__(self, attempts: int, last_error: str):
        super().__init__(
            f"Error: Loop detected. This exact tool call has been attempted "
            f"{attempts} times already and failed with: "
            f"\"{last_error}\". Please stop and ask the user for "
            f"clarification instead of retrying again."
        )
        self.attempts = attempts
        self.last_error = last_error


class SyntaxRegressionError(ToolExecutionError):
    """A patch applied cleanly but left a file that no longer parses."""

    def __init__(self, path: str, detail: str):
        super().__init__(
            f"Error: The patch was applied but file \"{path}\" now contains syntax errors:\n"
            f"{detail}\nPlease fix the errors and apply a new patch."
        )
        self.path = path
        self.detail = detail


class PatchError(ToolExecutionError):
    """A patch could not be parsed or applied."""


# ── Provider-side ───────────────────────────────────────────────────

class ProviderError(CodexAgentError):
    """Base for failures reported by a provider adapter."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        type: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.type = type
        self.request_id = request_id


class ProviderTransientError(ProviderError):
    """Retryable provider failure (timeouts, 5xx, dropped connections)."""


class ProviderTerminalError(ProviderError):
    """Quota, token-limit or invalid-request failure; never retried."""


class PrematureCloseError(ProviderError):
    """The provider closed the stream before sending a complete response."""


class NetworkError(CodexAgentError):
    """Low-level network failure identified by errno."""

    def __init__(self, message: str, errno_code: str = ""):
        super().__init__(message)
        self.code = errno_code


# ── Lifecycle ───────────────────────────────────────────────────────

class CancellationError(CodexAgentError):
    """Work was abandoned because its run was canceled."""


class AgentTerminatedError(CodexAgentError):
    """run() was called after terminate()."""

    def __init__(self, message: str = "AgentLoop has been terminated"):
        super().__init__(message)
