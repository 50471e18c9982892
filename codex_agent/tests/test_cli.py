"""
Terminal front end: item rendering, approval prompts, /commands, one-shot prompts.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from codex_agent.core.agent_loop import AgentLoop
from codex_agent.core.approvals import ApplyPatchCommand, ReviewDecision
from codex_agent.core.models import Message, ToolCall, ToolResult
from codex_agent.core.tool_registry import ToolRegistry
from codex_agent.interfaces.cli import CLI, format_item
from codex_agent.tests.helpers import MockProvider, make_settings


def _cli(tmp_path, provider=None) -> CLI:
    agent = AgentLoop(provider or MockProvider(), ToolRegistry(), make_settings(tmp_path))
    return CLI(agent)


class TestFormatItem:

    def test_user_items_are_not_echoed(self):
        assert format_item(Message(role="user", content="hi")) is None

    def test_assistant_text_and_calls(self):
        text = format_item(Message(
            role="assistant", content="Looking.",
            tool_calls=[ToolCall(id="c1", name="read_file", arguments='{"path": "a.py"}')],
        ))
        assert "Agent ▸" in text and "Looking." in text
        assert "read_file" in text and '{"path": "a.py"}' in text

    def test_tool_result_marks_failure(self):
        text = format_item(ToolResult("c1", "boom", {"exit_code": 2}).to_message())
        assert "✗ exit 2" in text
        assert "    boom" in text

    def test_long_output_is_previewed(self):
        output = "\n".join(f"line {i}" for i in range(20))
        text = format_item(ToolResult("c1", output).to_message())
        assert "✓" in text
        assert "line 11" in text and "line 12" not in text
        assert "... 8 more lines" in text


class TestCLI:

    def test_callbacks_are_wired(self, tmp_path):
        cli = _cli(tmp_path)
        assert cli.agent.on_item == cli._on_item
        assert cli.agent.get_command_confirmation == cli._confirm

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer,decision", [
        ("y", ReviewDecision.YES),
        ("", ReviewDecision.YES),
        ("always", ReviewDecision.ALWAYS),
        ("q", ReviewDecision.NO_EXIT),
        ("nope", ReviewDecision.NO_CONTINUE),
    ])
    async def test_confirm_answers(self, tmp_path, capsys, answer, decision):
        cli = _cli(tmp_path)
        with patch.object(cli, "_blocking_input", return_value=answer):
            confirmation = await cli._confirm(["rm", "-rf", "build"], None)
        assert confirmation.decision is decision
        if decision is ReviewDecision.NO_CONTINUE:
            assert confirmation.custom_deny_message == "Command was rejected by the user."
        assert "rm -rf build" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_confirm_shows_patch(self, tmp_path, capsys):
        cli = _cli(tmp_path)
        with patch.object(cli, "_blocking_input", return_value="y"):
            await cli._confirm(["apply_patch"], ApplyPatchCommand(patch="*** Begin Patch"))
        assert "Apply patch?" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_commands(self, tmp_path, capsys):
        cli = _cli(tmp_path, MockProvider().enqueue_text("ok"))
        await cli.run_prompt("old")
        assert cli.agent.history
        assert await cli._handle_command("/clear")
        assert cli.agent.history == []
        assert not await cli._handle_command("/unknown")
        assert await cli._handle_command("/exit")
        assert cli.agent.terminated

    @pytest.mark.asyncio
    async def test_run_prompt_prints_answer(self, tmp_path, capsys):
        provider = MockProvider().enqueue_text("All done.")
        cli = _cli(tmp_path, provider)
        await cli.run_prompt("do it")
        assert "All done." in capsys.readouterr().out
        assert [m.role for m in cli.agent.history] == ["user", "assistant"]
