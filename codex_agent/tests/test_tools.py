"""
Built-in tool handlers.

Covers:
- File tools (read, ranged read, write, delete, listings with .gitignore)
- Dry-run behavior of side-effecting tools
- Patch engine (add/update/move/delete, context mismatch leaves tree untouched)
- Shell tool approval flow (policy, always-approve, denial, quit)
- Memory tools
- search_codebase Python fallback
- Semantic search adapters
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from codex_agent.core.approvals import (
    ApprovalPolicy, CommandConfirmation, ReviewDecision, needs_approval,
)
from codex_agent.core.arguments import (
    DeleteFileArgs, ExecArgs, ForgetMemoryArgs, IndexCodebaseArgs, ListDirectoryArgs,
    ListFilesRecursiveArgs, PersistentMemoryArgs, QueryMemoryArgs, ReadFileArgs,
    MaintainMemoryArgs, ReadFileLinesArgs, SearchCodebaseArgs, SemanticSearchArgs,
    SummarizeMemoryArgs, WriteFileArgs,
)
from codex_agent.core.errors import PatchError
from codex_agent.tests.helpers import make_context
from codex_agent.tools.apply_patch import affected_paths, apply_patch, parse_patch
from codex_agent.tools.files import (
    DeleteFileTool, ListDirectoryTool, ListFilesRecursiveTool, ReadFileLinesTool,
    ReadFileTool, WriteFileTool,
)
from codex_agent.tools.memory_tool import (
    ForgetMemoryTool, MaintainMemoryTool, MemoryFile, PersistentMemoryTool, QueryMemoryTool,
    SummarizeMemoryTool,
)
from codex_agent.tools.search import SearchCodebaseTool
from codex_agent.tools.semantic import NOT_CONFIGURED, IndexCodebaseTool, SemanticSearchTool
from codex_agent.tools.shell import ShellTool


# ══════════════════════════════════════════════════════════════
# 1. TestFileTools
# ══════════════════════════════════════════════════════════════

class TestFileTools:

    @pytest.mark.asyncio
    async def test_read_file_reports_access(self, tmp_path):
        (tmp_path / "a.txt").write_text("hello")
        ctx = make_context(tmp_path)
        ctx.on_file_access = MagicMock()
        result = await ReadFileTool().execute(ReadFileArgs(path="a.txt"), ctx)
        assert result.output == "hello"
        ctx.on_file_access.assert_called_once_with("a.txt")

    @pytest.mark.asyncio
    async def test_read_missing_file(self, tmp_path):
        result = await ReadFileTool().execute(ReadFileArgs(path="nope"), make_context(tmp_path))
        assert result.exit_code == 1
        assert result.output == "Error: File not found: nope"

    @pytest.mark.asyncio
    async def test_read_file_lines_range(self, tmp_path):
        (tmp_path / "a.txt").write_text("1\n2\n3\n4\n")
        result = await ReadFileLinesTool().execute(
            ReadFileLinesArgs(path="a.txt", start_line=2, end_line=3), make_context(tmp_path),
        )
        assert result.output == "2\n3"
        assert result.metadata["start_line"] == 2

    @pytest.mark.asyncio
    async def test_write_file_dry_run(self, tmp_path):
        ctx = make_context(tmp_path, dry_run=True)
        result = await WriteFileTool().execute(WriteFileArgs(path="a.ts", content="x"), ctx)
        assert result.output == "[Dry Run] Would write 1 characters to a.ts"
        assert result.metadata["dry_run"] is True
        assert not (tmp_path / "a.ts").exists()

    @pytest.mark.asyncio
    async def test_write_file_creates_parents(self, tmp_path):
        result = await WriteFileTool().execute(
            WriteFileArgs(path="src/new/a.py", content="x = 1\n"), make_context(tmp_path),
        )
        assert result.success
        assert (tmp_path / "src/new/a.py").read_text() == "x = 1\n"

    @pytest.mark.asyncio
    async def test_write_file_denied_under_suggest(self, tmp_path):
        confirm = MagicMock(return_value=CommandConfirmation(
            ReviewDecision.NO_CONTINUE, custom_deny_message="not now",
        ))
        ctx = make_context(tmp_path, approval_policy=ApprovalPolicy.SUGGEST, get_command_confirmation=confirm)
        result = await WriteFileTool().execute(WriteFileArgs(path="a.txt", content="x"), ctx)
        assert result.output == "not now"
        assert not (tmp_path / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_delete_file(self, tmp_path):
        (tmp_path / "gone.txt").write_text("bye")
        result = await DeleteFileTool().execute(DeleteFileArgs(path="gone.txt"), make_context(tmp_path))
        assert result.output == "Deleted gone.txt"
        assert not (tmp_path / "gone.txt").exists()

    @pytest.mark.asyncio
    async def test_delete_dry_run(self, tmp_path):
        (tmp_path / "keep.txt").write_text("x")
        result = await DeleteFileTool().execute(
            DeleteFileArgs(path="keep.txt"), make_context(tmp_path, dry_run=True),
        )
        assert result.output == "[Dry Run] Would delete file: keep.txt"
        assert (tmp_path / "keep.txt").exists()

    @pytest.mark.asyncio
    async def test_list_directory_honors_gitignore(self, tmp_path):
        (tmp_path / ".gitignore").write_text("*.log\nbuild/\n")
        (tmp_path / "src").mkdir()
        (tmp_path / "build").mkdir()
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "app.py").write_text("")
        (tmp_path / "debug.log").write_text("")
        result = await ListDirectoryTool().execute(ListDirectoryArgs(path="."), make_context(tmp_path))
        assert result.output.splitlines() == ["dir:  src", "file: .gitignore", "file: app.py"]

    @pytest.mark.asyncio
    async def test_list_files_recursive_depth(self, tmp_path):
        (tmp_path / "a" / "b" / "c").mkdir(parents=True)
        (tmp_path / "a" / "b" / "c" / "deep.txt").write_text("")
        (tmp_path / "a" / "top.txt").write_text("")
        result = await ListFilesRecursiveTool().execute(
            ListFilesRecursiveArgs(path=".", depth=2), make_context(tmp_path),
        )
        assert "dir: a/" in result.output
        assert "  file: top.txt" in result.output
        assert "deep.txt" not in result.output


# ══════════════════════════════════════════════════════════════
# 2. TestPatchEngine
# ══════════════════════════════════════════════════════════════

class TestPatchEngine:

    def test_add_update_delete(self, tmp_path):
        (tmp_path / "old.py").write_text("def main():\n    return 1\n")
        (tmp_path / "gone.py").write_text("x\n")
        patch = (
            "*** Begin Patch\n"
            "*** Add File: new.py\n+print('hi')\n"
            "*** Update File: old.py\n@@ def main():\n-    return 1\n+    return 2\n"
            "*** Delete File: gone.py\n"
            "*** End Patch"
        )
        summary = apply_patch(patch, tmp_path)
        assert summary.render() == "Done!\nA new.py\nM old.py\nD gone.py"
        assert (tmp_path / "new.py").read_text() == "print('hi')\n"
        assert (tmp_path / "old.py").read_text() == "def main():\n    return 2\n"
        assert not (tmp_path / "gone.py").exists()

    def test_move_file(self, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\n")
        patch = (
            "*** Begin Patch\n*** Update File: a.py\n*** Move to: b.py\n"
            "-x = 1\n+x = 2\n*** End Patch"
        )
        apply_patch(patch, tmp_path)
        assert not (tmp_path / "a.py").exists()
        assert (tmp_path / "b.py").read_text() == "x = 2\n"
        assert affected_paths(patch) == ["b.py"]

    def test_mismatched_context_writes_nothing(self, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\n")
        patch = (
            "*** Begin Patch\n*** Add File: b.py\n+y\n"
            "*** Update File: a.py\n-not there\n+z\n*** End Patch"
        )
        with pytest.raises(PatchError, match="Failed to find expected lines"):
            apply_patch(patch, tmp_path)
        assert not (tmp_path / "b.py").exists()

    def test_envelope_required(self):
        with pytest.raises(PatchError, match="must start with"):
            parse_patch("*** Add File: a\n+x\n*** End Patch")

    def test_absolute_paths_rejected(self, tmp_path):
        with pytest.raises(PatchError, match="relative"):
            apply_patch("*** Begin Patch\n*** Add File: /etc/x\n+x\n*** End Patch", tmp_path)


# ══════════════════════════════════════════════════════════════
# 3. TestShellTool
# ══════════════════════════════════════════════════════════════

class TestShellTool:

    @pytest.mark.asyncio
    async def test_runs_argv(self, tmp_path):
        result = await ShellTool().execute(ExecArgs(cmd=["echo", "hi"]), make_context(tmp_path))
        assert result.output.strip() == "hi"
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_code(self, tmp_path):
        result = await ShellTool().execute(ExecArgs(cmd=["false"]), make_context(tmp_path))
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        result = await ShellTool().execute(ExecArgs(cmd=["definitely-not-a-binary"]), make_context(tmp_path))
        assert result.exit_code == 127

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        result = await ShellTool().execute(ExecArgs(cmd=["sleep", "5"], timeout=100), make_context(tmp_path))
        assert result.exit_code == 124
        assert "timed out" in result.output

    @pytest.mark.asyncio
    async def test_dry_run(self, tmp_path):
        result = await ShellTool().execute(ExecArgs(cmd=["rm", "-rf", "x"]), make_context(tmp_path, dry_run=True))
        assert result.output == "[Dry Run] Would execute: rm -rf x"
        assert result.metadata["dry_run"] is True

    @pytest.mark.asyncio
    async def test_suggest_policy_asks_host(self, tmp_path):
        confirm = AsyncMock(return_value=CommandConfirmation(ReviewDecision.YES))
        ctx = make_context(tmp_path, approval_policy=ApprovalPolicy.SUGGEST, get_command_confirmation=confirm)
        await ShellTool().execute(ExecArgs(cmd=["echo", "x"]), ctx)
        confirm.assert_awaited_once_with(["echo", "x"], None)

    @pytest.mark.asyncio
    async def test_always_approve_is_remembered(self, tmp_path):
        confirm = MagicMock(return_value=CommandConfirmation(ReviewDecision.ALWAYS))
        ctx = make_context(tmp_path, approval_policy=ApprovalPolicy.SUGGEST, get_command_confirmation=confirm)
        await ShellTool().execute(ExecArgs(cmd=["echo", "x"]), ctx)
        await ShellTool().execute(ExecArgs(cmd=["echo", "x"]), ctx)
        assert confirm.call_count == 1

    @pytest.mark.asyncio
    async def test_denial_and_quit(self, tmp_path):
        deny = MagicMock(return_value=CommandConfirmation(ReviewDecision.NO_CONTINUE))
        ctx = make_context(tmp_path, approval_policy=ApprovalPolicy.SUGGEST, get_command_confirmation=deny)
        result = await ShellTool().execute(ExecArgs(cmd=["echo", "x"]), ctx)
        assert result.output == "Command was rejected by the user."

        quit_ = MagicMock(return_value=CommandConfirmation(ReviewDecision.NO_EXIT))
        ctx = make_context(tmp_path, approval_policy=ApprovalPolicy.SUGGEST, get_command_confirmation=quit_)
        result = await ShellTool().execute(ExecArgs(cmd=["echo", "x"]), ctx)
        assert result.output == "aborted"

    @pytest.mark.asyncio
    async def test_auto_edit_lets_patches_through(self, tmp_path):
        confirm = MagicMock()
        ctx = make_context(tmp_path, approval_policy=ApprovalPolicy.AUTO_EDIT, get_command_confirmation=confirm)
        patch = "*** Begin Patch\n*** Add File: a.txt\n+x\n*** End Patch"
        result = await ShellTool().execute(ExecArgs(cmd=["apply_patch", patch]), ctx)
        assert result.success
        confirm.assert_not_called()

    @pytest.mark.asyncio
    async def test_aborted_signal_short_circuits(self, tmp_path):
        ctx = make_context(tmp_path)
        ctx.abort_signal._fire("user")
        result = await ShellTool().execute(ExecArgs(cmd=["echo", "x"]), ctx)
        assert result.output == "aborted"

    def test_needs_approval_matrix(self):
        assert needs_approval(ApprovalPolicy.SUGGEST, is_edit=True)
        assert not needs_approval(ApprovalPolicy.AUTO_EDIT, is_edit=True)
        assert needs_approval(ApprovalPolicy.AUTO_EDIT, is_edit=False)
        assert not needs_approval(ApprovalPolicy.FULL_AUTO, is_edit=False)

    def test_policy_parse(self):
        assert ApprovalPolicy.parse("full_auto") is ApprovalPolicy.FULL_AUTO
        assert ApprovalPolicy.parse(None) is ApprovalPolicy.SUGGEST
        with pytest.raises(ValueError):
            ApprovalPolicy.parse("yolo")


DUPLICATED = (
    "- [2026-01-01] [build] Run tests with make test\n"
    "- [2026-01-03] [build] Run tests with make test\n"
)


def _memory_file(tmp_path, text):
    path = tmp_path / ".codex" / "memory.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


# ══════════════════════════════════════════════════════════════
# 4. TestMemoryTools
# ══════════════════════════════════════════════════════════════

class TestMemoryTools:

    @pytest.mark.asyncio
    async def test_save_query_summarize_forget(self, tmp_path):
        ctx = make_context(tmp_path)
        await PersistentMemoryTool().execute(PersistentMemoryArgs(fact="tests use pytest -q", category="build"), ctx)
        await PersistentMemoryTool().execute(PersistentMemoryArgs(fact="prefer httpx"), ctx)

        found = await QueryMemoryTool().execute(QueryMemoryArgs(query="pytest"), ctx)
        assert found.metadata["match_count"] == 1
        assert "[build] tests use pytest -q" in found.output

        summary = await SummarizeMemoryTool().execute(SummarizeMemoryArgs(), ctx)
        assert "## build\n- tests use pytest -q" in summary.output
        assert "## general\n- prefer httpx" in summary.output

        forgot = await ForgetMemoryTool().execute(ForgetMemoryArgs(pattern="HTTPX"), ctx)
        assert forgot.metadata["removed_count"] == 1
        assert "httpx" not in (tmp_path / ".codex/memory.md").read_text()

    @pytest.mark.asyncio
    async def test_memory_dry_run_writes_nothing(self, tmp_path):
        ctx = make_context(tmp_path, dry_run=True)
        result = await PersistentMemoryTool().execute(PersistentMemoryArgs(fact="x"), ctx)
        assert result.output == "[Dry Run] Would save fact: [general] x"
        assert not (tmp_path / ".codex").exists()

    @pytest.mark.asyncio
    async def test_query_without_file(self, tmp_path):
        result = await QueryMemoryTool().execute(QueryMemoryArgs(query="x"), make_context(tmp_path))
        assert result.output == "No memory file found."

    def test_relevant_ranks_by_shared_words(self, tmp_path):
        path = tmp_path / "memory.md"
        path.write_text(
            "# notes\n"
            "- [2026-01-01] [build] Run tests with make\n"
            "- [2026-01-01] [build] Run the integration tests with make integration\n"
            "- [2026-01-01] [style] Tabs in Makefiles\n"
        )
        memory = MemoryFile(path)
        assert memory.relevant("run integration tests") == [
            "- [2026-01-01] [build] Run the integration tests with make integration",
            "- [2026-01-01] [build] Run tests with make",
        ]
        assert memory.relevant("run integration tests", limit=1) == [
            "- [2026-01-01] [build] Run the integration tests with make integration",
        ]
        assert memory.relevant("a b") == []
        assert MemoryFile(tmp_path / "missing.md").relevant("tests") == []

    @pytest.mark.asyncio
    async def test_maintain_rewrites_memory(self, tmp_path):
        path = _memory_file(tmp_path, DUPLICATED)
        complete = AsyncMock(return_value="- [2026-01-03] [build] Run tests with make test\n")
        result = await MaintainMemoryTool().execute(MaintainMemoryArgs(), make_context(tmp_path, complete=complete))
        assert result.output == "Memory maintenance complete. Memory has been cleaned up and consolidated."
        assert result.metadata["original_entries"] == 2
        assert result.metadata["new_entries"] == 1
        assert path.read_text() == "- [2026-01-03] [build] Run tests with make test\n"
        prompt = complete.await_args.args[0]
        assert "CURRENT MEMORY ENTRIES:\n- [2026-01-01] [build] Run tests with make test" in prompt

    @pytest.mark.asyncio
    async def test_maintain_without_changes(self, tmp_path):
        path = _memory_file(tmp_path, DUPLICATED)
        complete = AsyncMock(return_value=DUPLICATED)
        result = await MaintainMemoryTool().execute(MaintainMemoryArgs(), make_context(tmp_path, complete=complete))
        assert result.output == "Memory maintenance complete. No changes were necessary."
        assert path.read_text() == DUPLICATED

    @pytest.mark.asyncio
    async def test_maintain_ignores_empty_reply(self, tmp_path):
        path = _memory_file(tmp_path, DUPLICATED)
        complete = AsyncMock(return_value="  \n")
        result = await MaintainMemoryTool().execute(MaintainMemoryArgs(), make_context(tmp_path, complete=complete))
        assert result.success
        assert path.read_text() == DUPLICATED

    @pytest.mark.asyncio
    async def test_maintain_without_file_or_entries(self, tmp_path):
        complete = AsyncMock()
        ctx = make_context(tmp_path, complete=complete)
        missing = await MaintainMemoryTool().execute(MaintainMemoryArgs(), ctx)
        assert missing.output == "No memory file found to maintain."
        _memory_file(tmp_path, "\n")
        empty = await MaintainMemoryTool().execute(MaintainMemoryArgs(), ctx)
        assert empty.output == "Memory is empty, nothing to maintain."
        complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_maintain_needs_a_model(self, tmp_path):
        _memory_file(tmp_path, DUPLICATED)
        result = await MaintainMemoryTool().execute(MaintainMemoryArgs(), make_context(tmp_path))
        assert result.exit_code == 1
        assert result.output == "Memory maintenance needs a model connection."

    @pytest.mark.asyncio
    async def test_maintain_dry_run_keeps_file(self, tmp_path):
        path = _memory_file(tmp_path, DUPLICATED)
        complete = AsyncMock(return_value="- [2026-01-03] [build] Run tests with make test")
        ctx = make_context(tmp_path, dry_run=True, complete=complete)
        result = await MaintainMemoryTool().execute(MaintainMemoryArgs(), ctx)
        assert result.output == "[Dry Run] Would rewrite memory from 2 to 1 entries."
        assert result.metadata["dry_run"] is True
        assert path.read_text() == DUPLICATED


# ══════════════════════════════════════════════════════════════
# 5. TestSearchAndSemantic
# ══════════════════════════════════════════════════════════════

class TestSearchAndSemantic:

    @pytest.mark.asyncio
    async def test_python_search_fallback(self, tmp_path):
        (tmp_path / "a.py").write_text("def main():\n    pass\n")
        (tmp_path / "b.txt").write_text("def main\n")
        tool = SearchCodebaseTool(use_ripgrep=False)
        result = await tool.execute(SearchCodebaseArgs(pattern="def main", include="*.py"), make_context(tmp_path))
        assert result.output == "a.py:1:def main():"
        assert result.metadata["match_count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_regex(self, tmp_path):
        result = await SearchCodebaseTool(use_ripgrep=False).execute(
            SearchCodebaseArgs(pattern="("), make_context(tmp_path),
        )
        assert result.output.startswith("Invalid regex pattern")

    @pytest.mark.asyncio
    async def test_semantic_not_configured(self, tmp_path):
        result = await SemanticSearchTool().execute(SemanticSearchArgs(query="auth"), make_context(tmp_path))
        assert result.output == NOT_CONFIGURED
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_semantic_search_renders_hits(self, tmp_path):
        index = MagicMock()
        index.search = AsyncMock(return_value=[
            {"path": "auth.py", "line": 12, "score": 0.9, "text": "def login():"},
        ])
        ctx = make_context(tmp_path, semantic_index=index)
        result = await SemanticSearchTool().execute(SemanticSearchArgs(query="login", limit=3), ctx)
        index.search.assert_awaited_once_with("login", 3)
        assert result.output == "auth.py:12 (score 0.900)\n    def login():"

    @pytest.mark.asyncio
    async def test_index_codebase(self, tmp_path):
        index = MagicMock()
        index.index = AsyncMock(return_value=7)
        ctx = make_context(tmp_path, semantic_index=index)
        result = await IndexCodebaseTool().execute(IndexCodebaseArgs(path="."), ctx)
        assert result.metadata["count"] == 7
        assert result.output.startswith("Indexed 7 chunks under ")
