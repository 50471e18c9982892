"""
CLI Interface — line-based terminal chat with the agent loop.
Supports /commands, a thinking spinner, tool result display and approval prompts.
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
import signal
import sys
import threading
import time
from typing import Optional

from ..core.agent_loop import AgentLoop
from ..core.approvals import ApplyPatchCommand, CommandConfirmation, ReviewDecision
from ..core.models import Message

logger = logging.getLogger(__name__)


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"


# Prevents spinner and printed items from interleaving on the terminal.
_stdout_lock = threading.Lock()


class Spinner:
    """A simple terminal spinner that runs in a background thread."""

    FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(self, message: str = "Thinking"):
        self._message = message
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self, message: Optional[str] = None) -> None:
        if message:
            self._message = message
        if self._running or not sys.stdout.isatty():
            return
        self._running = True
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
        with _stdout_lock:
            sys.stdout.write(f"\r{' ' * 80}\r")
            sys.stdout.flush()

    def _spin(self) -> None:
        idx = 0
        start = time.time()
        while self._running:
            elapsed = int(time.time() - start)
            frame = self.FRAMES[idx % len(self.FRAMES)]
            with _stdout_lock:
                if not self._running:
                    break
                sys.stdout.write(
                    f"\r  {Colors.DIM}{frame} {self._message}... ({elapsed}s){Colors.RESET}"
                )
                sys.stdout.flush()
            idx += 1
            time.sleep(0.1)


def format_item(item: Message) -> Optional[str]:
    """Terminal rendering of one conversation item (None to skip)."""
    if item.role == "user":
        return None
    if item.role == "tool":
        try:
            payload = json.loads(item.text)
        except ValueError:
            payload = {"output": item.text, "metadata": {}}
        exit_code = payload.get("metadata", {}).get("exit_code", 0)
        mark = f"{Colors.GREEN}✓" if exit_code == 0 else f"{Colors.RED}✗ exit {exit_code}"
        output = str(payload.get("output", ""))
        lines = output.splitlines()
        preview = "\n".join(f"    {l}" for l in lines[:12])
        if len(lines) > 12:
            preview += f"\n    {Colors.DIM}... {len(lines) - 12} more lines{Colors.RESET}"
        return f"  {mark}{Colors.RESET}\n{preview}" if preview else f"  {mark}{Colors.RESET}"
    if item.role == "assistant":
        parts = []
        if item.reasoning:
            parts.append(f"{Colors.DIM}{item.reasoning.strip()}{Colors.RESET}")
        if item.text:
            parts.append(f"{Colors.BOLD}{Colors.GREEN}Agent ▸{Colors.RESET} {item.text}")
        for call in item.tool_calls or []:
            parts.append(f"  {Colors.DIM}⚙ {Colors.CYAN}{call.name}{Colors.RESET} {Colors.DIM}{call.arguments[:200]}{Colors.RESET}")
        return "\n".join(parts) or None
    return None


class CLI:
    """Interactive terminal interface for the agent loop."""

    def __init__(self, agent: AgentLoop):
        self.agent = agent
        self._spinner = Spinner()
        self._running = False

        self.agent.on_item = self._on_item
        self.agent.on_loading = self._on_loading
        self.agent.on_reset = self._on_reset
        self.agent.get_command_confirmation = self._confirm

    # ── Agent callbacks ────────────────────────────────────────

    def _on_item(self, item: Message) -> None:
        text = format_item(item)
        if text is None:
            return
        self._spinner.stop()
        with _stdout_lock:
            print(text)

    def _on_loading(self, loading: bool) -> None:
        if loading:
            self._spinner.start("Thinking")
        else:
            self._spinner.stop()

    def _on_reset(self) -> None:
        logger.debug("Agent loop reset")

    async def _confirm(self, command: list[str], apply_patch: Optional[ApplyPatchCommand]) -> CommandConfirmation:
        self._spinner.stop()
        with _stdout_lock:
            if apply_patch is not None:
                print(f"\n{Colors.YELLOW}Apply patch?{Colors.RESET}\n{apply_patch.patch}")
            else:
                print(f"\n{Colors.YELLOW}Run command?{Colors.RESET} {' '.join(command)}")
        answer = await asyncio.get_running_loop().run_in_executor(
            None, self._blocking_input, "  [y]es / [n]o / [a]lways / [q]uit ▸ ",
        )
        decision = {
            "y": ReviewDecision.YES, "yes": ReviewDecision.YES, "": ReviewDecision.YES,
            "a": ReviewDecision.ALWAYS, "always": ReviewDecision.ALWAYS,
            "q": ReviewDecision.NO_EXIT, "quit": ReviewDecision.NO_EXIT,
        }.get(answer.lower(), ReviewDecision.NO_CONTINUE)
        if decision is ReviewDecision.NO_CONTINUE:
            return CommandConfirmation(decision, custom_deny_message="Command was rejected by the user.")
        return CommandConfirmation(decision)

    # ── Commands ───────────────────────────────────────────────

    async def _handle_command(self, cmd: str) -> bool:
        """Handle a /command. Returns True if it was recognized."""
        name = cmd.strip().split()[0].lower()
        if name in ("/exit", "/quit"):
            self.agent.terminate()
            self._running = False
            return True
        if name == "/clear":
            self.agent.clear_history()
            print(f"  {Colors.DIM}Context cleared.{Colors.RESET}")
            return True
        if name == "/help":
            print("  /clear  reset conversation and loop guard\n  /exit   quit")
            return True
        return False

    # ── Running ────────────────────────────────────────────────

    def _blocking_input(self, prompt: str) -> str:
        """Read input from stdin (runs in thread to avoid blocking event loop)."""
        return input(prompt).strip()

    async def run_prompt(self, prompt: str) -> None:
        """Run one prompt; Ctrl-C cancels the run instead of exiting."""
        loop = asyncio.get_running_loop()
        installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._interrupt)
            installed = True
        except (NotImplementedError, RuntimeError):
            pass
        try:
            await self.agent.run(prompt)
            await self.agent.wait_idle()
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)
            self._spinner.stop()

    def _interrupt(self) -> None:
        self.agent.cancel()
        with _stdout_lock:
            print(f"\n  {Colors.DIM}(Cancelled){Colors.RESET}\n")

    async def run(self) -> None:
        """Main interactive loop."""
        self._running = True
        print(f"{Colors.BOLD}codex-agent{Colors.RESET} {Colors.DIM}({os.getcwd()}) /help for commands{Colors.RESET}")
        loop = asyncio.get_running_loop()

        while self._running:
            try:
                user_input = await loop.run_in_executor(
                    None, self._blocking_input, f"{Colors.BOLD}{Colors.BLUE}You ▸ {Colors.RESET}",
                )
            except (EOFError, KeyboardInterrupt):
                print(f"\n{Colors.DIM}Goodbye!{Colors.RESET}")
                break

            if not user_input:
                continue
            if user_input.startswith("/") and await self._handle_command(user_input):
                continue
            try:
                await self.run_prompt(user_input)
            except Exception as e:
                logger.exception("Run failed")
                print(f"\n  {Colors.RED}Error: {str(e)}{Colors.RESET}\n")

        if not self.agent.terminated:
            self.agent.terminate()
