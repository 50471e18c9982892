"""
ToolDispatcher — ordering, validation failures, loop guard, batches and
the post-patch syntax check.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from codex_agent.core.arguments import ReadFileArgs
from codex_agent.core.dispatcher import ToolDispatcher, syntax_error_message
from codex_agent.core.errors import SyntaxRegressionError, ToolExecutionError
from codex_agent.core.loop_guard import LoopGuard
from codex_agent.core.models import ToolCall, ToolResult
from codex_agent.core.tool_names import APPLY_PATCH
from codex_agent.core.tool_registry import ToolRegistry
from codex_agent.tests.helpers import make_context
from codex_agent.tools.base import BaseTool
from codex_agent.tools.files import ReadFileTool
from codex_agent.tools.shell import ShellTool


class DelayedReadTool(BaseTool):
    """Answers read_file after a per-path delay, recording completion order."""

    name = "read_file"
    description = "test double"
    input_schema = {"type": "object", "properties": {"path": {"type": "string"}}}

    def __init__(self, delays: dict[str, float]):
        self.delays = delays
        self.finished: list[str] = []

    async def execute(self, args: ReadFileArgs, ctx) -> ToolResult:
        await asyncio.sleep(self.delays.get(args.path, 0))
        self.finished.append(args.path)
        return self._success(f"contents of {args.path}", ctx)


class ExplodingTool(BaseTool):
    name = "read_file"
    description = "raises"
    input_schema = {}

    async def execute(self, args, ctx) -> ToolResult:
        raise RuntimeError("disk on fire")


def _call(call_id: str, name: str, args) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=args if isinstance(args, str) else json.dumps(args))


def _dispatcher(*tools, **kwargs) -> ToolDispatcher:
    registry = ToolRegistry()
    for tool in tools:
        if isinstance(tool, ShellTool):
            registry.register(tool, APPLY_PATCH)
        else:
            registry.register(tool)
    return ToolDispatcher(registry, **kwargs)


# ══════════════════════════════════════════════════════════════
# 1. TestOrdering
# ══════════════════════════════════════════════════════════════

class TestOrdering:

    @pytest.mark.asyncio
    async def test_results_follow_call_order_not_completion_order(self, tmp_path):
        tool = DelayedReadTool({"A": 0.05, "B": 0.0})
        dispatcher = _dispatcher(tool)
        results = await dispatcher.dispatch(
            [_call("a", "read_file", {"path": "A"}), _call("b", "read_file", {"path": "B"})],
            make_context(tmp_path),
        )
        assert tool.finished == ["B", "A"]
        assert [r.tool_call_id for r in results] == ["a", "b"]
        assert results[0].output == "contents of A"

    @pytest.mark.asyncio
    async def test_calls_run_concurrently(self, tmp_path):
        tool = DelayedReadTool({str(i): 0.1 for i in range(5)})
        dispatcher = _dispatcher(tool)
        calls = [_call(f"c{i}", "read_file", {"path": str(i)}) for i in range(5)]
        loop = asyncio.get_running_loop()
        started = loop.time()
        results = await dispatcher.dispatch(calls, make_context(tmp_path))
        assert loop.time() - started < 0.4
        assert len(results) == 5

    @pytest.mark.asyncio
    async def test_parallelism_limit_keeps_order(self, tmp_path):
        tool = DelayedReadTool({"A": 0.02, "B": 0.0})
        dispatcher = _dispatcher(tool, max_parallel=1)
        results = await dispatcher.dispatch(
            [_call("a", "read_file", {"path": "A"}), _call("b", "read_file", {"path": "B"})],
            make_context(tmp_path),
        )
        assert tool.finished == ["A", "B"]
        assert [r.tool_call_id for r in results] == ["a", "b"]


# ══════════════════════════════════════════════════════════════
# 2. TestFailures
# ══════════════════════════════════════════════════════════════

class TestFailures:

    @pytest.mark.asyncio
    async def test_validation_failure_is_a_result(self, tmp_path):
        dispatcher = _dispatcher(ShellTool())
        [result] = await dispatcher.dispatch([_call("c1", "shell", {"workdir": "."})], make_context(tmp_path))
        assert result.tool_call_id == "c1"
        assert result.metadata == {"exit_code": 1, "duration_seconds": 0}
        assert result.output.startswith("Missing required property")

    @pytest.mark.asyncio
    async def test_unknown_tool(self, tmp_path):
        dispatcher = _dispatcher()
        [result] = await dispatcher.dispatch([_call("c1", "mystery", {"path": "x"})], make_context(tmp_path))
        assert result.output == "no function found: mystery"
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_result(self, tmp_path):
        dispatcher = _dispatcher(ExplodingTool())
        [result] = await dispatcher.dispatch([_call("c1", "read_file", {"path": "x"})], make_context(tmp_path))
        assert result.output == "Tool execution error: disk on fire"
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_loop_guard_blocks_third_identical_failure(self, tmp_path):
        guard = LoopGuard(threshold=2)
        dispatcher = _dispatcher(ReadFileTool(), loop_guard=guard)
        ctx = make_context(tmp_path)
        call = _call("c", "read_file", {"path": "missing.txt"})
        first = await dispatcher.execute_one(call, ctx)
        second = await dispatcher.execute_one(call, ctx)
        third = await dispatcher.execute_one(call, ctx)
        assert first.output == second.output == "Error: File not found: missing.txt"
        assert third.metadata["loop_detected"] is True
        assert 'failed with: "Error: File not found: missing.txt"' in third.output

    @pytest.mark.asyncio
    async def test_alias_shares_loop_guard_key(self, tmp_path):
        guard = LoopGuard(threshold=1)
        dispatcher = _dispatcher(ReadFileTool(), loop_guard=guard)
        ctx = make_context(tmp_path)
        await dispatcher.execute_one(_call("c1", "repo_browser.open_file", '{"path":"nope"}'), ctx)
        blocked = await dispatcher.execute_one(_call("c2", "read_file", '{"path":"nope"}'), ctx)
        assert blocked.metadata.get("loop_detected")

    @pytest.mark.asyncio
    async def test_callbacks_fire_per_call(self, tmp_path):
        started, ended = [], []
        dispatcher = _dispatcher(
            DelayedReadTool({}),
            on_tool_start=lambda c: started.append(c.id),
            on_tool_end=lambda c, r: ended.append((c.id, r.exit_code)),
        )
        await dispatcher.dispatch([_call("x", "read_file", {"path": "p"})], make_context(tmp_path))
        assert started == ["x"] and ended == [("x", 0)]


# ══════════════════════════════════════════════════════════════
# 3. TestExecAndPatches
# ══════════════════════════════════════════════════════════════

class TestExecAndPatches:

    @pytest.mark.asyncio
    async def test_batch_payloads_run_in_sequence(self, tmp_path):
        dispatcher = _dispatcher(ShellTool())
        [result] = await dispatcher.dispatch(
            [_call("c1", "shell", '{"cmd":["echo","first"]}{"cmd":["echo","second"]}')],
            make_context(tmp_path),
        )
        assert result.exit_code == 0
        assert result.metadata["batch_size"] == 2
        assert result.output.index("first") < result.output.index("second")

    @pytest.mark.asyncio
    async def test_valid_patch_passes_syntax_check(self, tmp_path):
        patch = "*** Begin Patch\n*** Add File: ok.py\n+x = 1\n*** End Patch"
        accessed = []
        ctx = make_context(tmp_path)
        ctx.on_file_access = accessed.append
        dispatcher = _dispatcher(ShellTool())
        [result] = await dispatcher.dispatch([_call("p1", "apply_patch", {"patch": patch})], ctx)
        assert result.exit_code == 0
        assert result.output == "Done!\nA ok.py"
        assert (tmp_path / "ok.py").read_text() == "x = 1\n"
        assert accessed == [str((tmp_path / "ok.py").resolve())]

    @pytest.mark.asyncio
    async def test_syntax_regression_is_reported(self, tmp_path):
        (tmp_path / "cfg.json").write_text('{"a": 1}\n')
        patch = (
            "*** Begin Patch\n*** Update File: cfg.json\n"
            '-{"a": 1}\n+{"a": 1,\n*** End Patch'
        )
        dispatcher = _dispatcher(ShellTool())
        [result] = await dispatcher.dispatch(
            [_call("p1", "shell", {"cmd": ["apply_patch", patch]})], make_context(tmp_path),
        )
        assert result.exit_code == 1
        assert result.metadata["syntax_error"] is True
        assert result.output.startswith(
            'Error: The patch was applied but file "cfg.json" now contains syntax errors:\n'
        )
        assert result.output.endswith("\nPlease fix the errors and apply a new patch.")
        # the patch itself was applied
        assert (tmp_path / "cfg.json").read_text() == '{"a": 1,\n'

    @pytest.mark.asyncio
    async def test_dry_run_patch_skips_syntax_check(self, tmp_path):
        patch = "*** Begin Patch\n*** Add File: broken.py\n+def (\n*** End Patch"
        dispatcher = _dispatcher(ShellTool())
        [result] = await dispatcher.dispatch(
            [_call("p1", "apply_patch", {"patch": patch})], make_context(tmp_path, dry_run=True),
        )
        assert result.exit_code == 0
        assert result.output == "[Dry Run] Would execute: apply_patch"
        assert not (tmp_path / "broken.py").exists()

    def test_syntax_error_message(self):
        assert syntax_error_message("a.py", "line 1: invalid syntax") == (
            'Error: The patch was applied but file "a.py" now contains syntax errors:\n'
            "line 1: invalid syntax\nPlease fix the errors and apply a new patch."
        )

    def test_syntax_regression_error_fields(self):
        error = SyntaxRegressionError("a.py", "line 1: invalid syntax")
        assert isinstance(error, ToolExecutionError)
        assert (error.path, error.detail, error.exit_code) == ("a.py", "line 1: invalid syntax", 1)
        assert str(error) == syntax_error_message("a.py", "line 1: invalid syntax")
