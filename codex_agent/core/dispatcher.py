"""
ToolDispatcher — runs one assistant message's tool calls concurrently.

Each call goes through the same pipeline:

    normalize name -> loop guard -> validate arguments -> handler
        -> post-patch syntax check -> loop guard bookkeeping

Results are written into pre-allocated slots so they come back in the
original call order regardless of completion order. Validation, loop and
handler failures are returned as ToolResults; nothing here raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from .arguments import ArgValidator, ExecArgs, ToolArguments
from .errors import SyntaxRegressionError
from .loop_guard import LoopGuard
from .models import ToolCall, ToolResult
from .structured_logger import bind_log_context, reset_log_context
from .syntax_check import validate_file_syntax
from .tool_context import ToolContext
from .tool_names import NameNormalizer
from .tool_registry import ToolRegistry
from ..tools.apply_patch import affected_paths

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 10


def syntax_error_message(path: str, error: str) -> str:
    return str(SyntaxRegressionError(path, error))


class ToolDispatcher:
    """Fan-out/fan-in execution of tool calls against a ToolRegistry."""

    def __init__(
        self,
        registry: ToolRegistry,
        loop_guard: Optional[LoopGuard] = None,
        normalizer: Optional[NameNormalizer] = None,
        validator: Optional[ArgValidator] = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        on_tool_start: Optional[Callable[[ToolCall], None]] = None,
        on_tool_end: Optional[Callable[[ToolCall, ToolResult], None]] = None,
    ):
        self.registry = registry
        self.loop_guard = loop_guard or LoopGuard()
        self.normalizer = normalizer or NameNormalizer()
        self.validator = validator or ArgValidator(self.normalizer)
        self.max_parallel = max(1, max_parallel)
        self.on_tool_start = on_tool_start
        self.on_tool_end = on_tool_end

    async def dispatch(self, tool_calls: list[ToolCall], ctx: ToolContext) -> list[ToolResult]:
        """
        Execute ``tool_calls`` concurrently.

        Returns results in the SAME ORDER as ``tool_calls``.
        """
        results: list[Optional[ToolResult]] = [None] * len(tool_calls)
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def _run(index: int, call: ToolCall) -> None:
            async with semaphore:
                token = bind_log_context(tool_name=call.name)
                try:
                    results[index] = await self.execute_one(call, ctx.for_call(call.id))
                finally:
                    reset_log_context(token)

        await asyncio.gather(*(_run(i, call) for i, call in enumerate(tool_calls)))
        return [r for r in results if r is not None]

    async def execute_one(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        name = self.normalizer.normalize(call.name)
        raw = call.arguments or ""
        self._notify_start(call)

        if self.loop_guard.is_blocked(name, raw):
            result = self.loop_guard.blocked_result(call.id, name, raw)
            self._notify_end(call, result)
            return result

        t0 = time.time()
        validation = self.validator.validate(name, raw)
        if not validation.ok:
            error = validation.exception
            logger.info(f"Rejected {name} call {call.id}: {error}")
            result = ToolResult.from_error(call.id, error, duration_seconds=0)
        elif len(validation.arguments) == 1:
            result = await self._execute(name, validation.arguments[0], ctx)
        else:
            result = await self._execute_batch(name, validation.arguments, ctx)

        result.tool_call_id = call.id
        result.metadata.setdefault("duration_seconds", round(time.time() - t0, 3))
        self.loop_guard.record(name, raw, result)
        self._notify_end(call, result)
        return result

    async def _execute(self, name: str, args: ToolArguments, ctx: ToolContext) -> ToolResult:
        result = await self.registry.execute_tool(name, args, ctx)
        if (isinstance(args, ExecArgs) and args.is_apply_patch and result.success
                and not result.metadata.get("dry_run")):
            result = await self._check_patched_files(args, result, ctx)
        return result

    async def _execute_batch(self, name: str, batch: list[ToolArguments], ctx: ToolContext) -> ToolResult:
        """Payloads folded into one call run in order and answer as one result."""
        outputs: list[str] = []
        exit_code = 0
        for args in batch:
            result = await self._execute(name, args, ctx)
            outputs.append(result.output)
            exit_code = exit_code or result.exit_code
        return ToolResult(
            tool_call_id=ctx.call_id,
            output="\n".join(outputs),
            metadata={"exit_code": exit_code, "batch_size": len(batch)},
        )

    async def _check_patched_files(self, args: ExecArgs, result: ToolResult, ctx: ToolContext) -> ToolResult:
        for relative in affected_paths(args.patch_text or ""):
            path = ctx.resolve(relative, base=args.workdir)
            ctx.file_accessed(path)
            check = await validate_file_syntax(path)
            if not check.is_valid:
                error = SyntaxRegressionError(relative, check.error or "")
                logger.warning(f"Patch left {relative} with syntax errors: {check.error}")
                return ToolResult.from_error(
                    result.tool_call_id, error, **{**result.metadata, "syntax_error": True},
                )
        return result

    def _notify_start(self, call: ToolCall) -> None:
        if self.on_tool_start is None:
            return
        try:
            self.on_tool_start(call)
        except Exception as e:
            logger.warning(f"on_tool_start callback failed: {e}")

    def _notify_end(self, call: ToolCall, result: ToolResult) -> None:
        if self.on_tool_end is None:
            return
        try:
            self.on_tool_end(call, result)
        except Exception as e:
            logger.warning(f"on_tool_end callback failed: {e}")
