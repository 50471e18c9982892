"""
Shell Tool — runs argv commands and in-process patches for the model.

Handles the ``shell`` and ``apply_patch`` canonical names (``container.exec``
and ``repo_browser.exec`` are normalized to ``shell`` before they get here).
Approval is forwarded to the host through ``ToolContext.confirm``; the tool
itself never judges whether a command is acceptable.
"""

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..core.approvals import ApplyPatchCommand, ReviewDecision
from ..core.arguments import ExecArgs
from ..core.cancellation import AbortSignal
from ..core.errors import PatchError
from ..core.models import ToolResult
from ..core.tool_context import ToolContext
from .apply_patch import apply_patch
from .base import BaseTool

logger = logging.getLogger(__name__)


@dataclass
class CommandOutput:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration_seconds: float = 0.0
    timed_out: bool = False
    aborted: bool = False

    def combined(self, max_chars: int) -> str:
        output = self.stdout
        if self.stderr:
            output += f"\n[stderr]\n{self.stderr}" if output else self.stderr
        if len(output) > max_chars:
            output = output[:max_chars] + "\n[Output truncated]"
        return output


async def run_command(
    argv: list[str],
    cwd: Path,
    timeout: float,
    abort_signal: Optional[AbortSignal] = None,
) -> CommandOutput:
    """Run ``argv`` without a shell. Kills the process on timeout or abort."""
    t0 = time.time()
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
    )
    communicate = asyncio.ensure_future(process.communicate())
    waiters = {communicate}
    abort_wait = None
    if abort_signal is not None:
        abort_wait = asyncio.ensure_future(abort_signal.wait())
        waiters.add(abort_wait)

    done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    if abort_wait is not None and not abort_wait.done():
        abort_wait.cancel()

    if communicate not in done:
        process.kill()
        await communicate
        aborted = abort_wait is not None and abort_wait in done
        return CommandOutput(
            exit_code=1,
            duration_seconds=round(time.time() - t0, 3),
            timed_out=not aborted,
            aborted=aborted,
        )

    stdout, stderr = communicate.result()
    return CommandOutput(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode or 0,
        duration_seconds=round(time.time() - t0, 3),
    )


class ShellTool(BaseTool):
    name = "shell"
    description = (
        "Run a command in the workspace. Pass the command as an argv list in `cmd`. "
        "To edit files, call with cmd [\"apply_patch\", \"*** Begin Patch\\n...\\n*** End Patch\"]. "
        "Optional `workdir` (relative to the workspace) and `timeout` in milliseconds."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "cmd": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Command and arguments",
            },
            "workdir": {
                "type": "string",
                "description": "Working directory for the command",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in milliseconds",
            },
        },
        "required": ["cmd"],
    }

    async def execute(self, args: ExecArgs, ctx: ToolContext) -> ToolResult:
        if ctx.abort_signal.aborted:
            return self._error("aborted", ctx, duration_seconds=0)

        command_text = " ".join(args.cmd)
        if ctx.dry_run:
            shown = "apply_patch" if args.is_apply_patch else command_text
            return self._dry_run(f"[Dry Run] Would execute: {shown}", ctx, duration_seconds=0)

        patch = ApplyPatchCommand(args.patch_text) if args.is_apply_patch else None
        confirmation = await ctx.confirm(args.cmd, patch, is_edit=args.is_apply_patch)
        if not confirmation.approved:
            if confirmation.decision is ReviewDecision.NO_EXIT:
                return self._error("aborted", ctx, duration_seconds=0)
            message = confirmation.custom_deny_message or "Command was rejected by the user."
            return self._error(message, ctx, duration_seconds=0)

        cwd = ctx.resolve(args.workdir) if args.workdir else ctx.workdir
        if args.is_apply_patch:
            return self._apply_patch(args.patch_text, cwd, ctx)
        return await self._run(args, cwd, ctx)

    def _apply_patch(self, patch: str, cwd: Path, ctx: ToolContext) -> ToolResult:
        t0 = time.time()
        try:
            summary = apply_patch(patch, cwd)
        except PatchError as e:
            return self._error(str(e), ctx, duration_seconds=round(time.time() - t0, 3))
        return self._success(summary.render(), ctx, duration_seconds=round(time.time() - t0, 3))

    async def _run(self, args: ExecArgs, cwd: Path, ctx: ToolContext) -> ToolResult:
        timeout_ms = args.timeout or ctx.settings.exec_timeout_ms
        if not cwd.is_dir():
            return self._error(f"Working directory does not exist: {cwd}", ctx, duration_seconds=0)
        try:
            out = await run_command(args.cmd, cwd, timeout_ms / 1000, ctx.abort_signal)
        except FileNotFoundError:
            return self._error(f"Command not found: {args.cmd[0]}", ctx, exit_code=127, duration_seconds=0)

        if out.aborted:
            return self._error("aborted", ctx, duration_seconds=out.duration_seconds)
        if out.timed_out:
            return self._error(
                f"Command timed out after {timeout_ms / 1000:g}s: {' '.join(args.cmd)}",
                ctx, exit_code=124, duration_seconds=out.duration_seconds,
            )
        output = out.combined(ctx.settings.max_output_chars)
        return ToolResult(
            tool_call_id=ctx.call_id,
            output=output,
            metadata={"exit_code": out.exit_code, "duration_seconds": out.duration_seconds},
        )
