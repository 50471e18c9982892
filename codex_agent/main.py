"""
Main entry point — parse args, load config, initialize everything, launch CLI.
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from .config.settings import AgentSettings, load_config
from .core.agent_loop import AgentLoop
from .core.errors import CodexAgentError
from .core.providers.base import ProviderFactory
from .core.structured_logger import setup_logging
from .core.tool_names import APPLY_PATCH
from .core.tool_registry import ToolRegistry
from .interfaces.cli import CLI

# Register providers
from .core.providers import anthropic_provider, ollama, openai_provider  # noqa: F401


def register_tools(registry: ToolRegistry) -> ToolRegistry:
    """Register every built-in tool handler."""
    from .tools.files import (
        DeleteFileTool, ListDirectoryTool, ListFilesRecursiveTool,
        ReadFileLinesTool, ReadFileTool, WriteFileTool,
    )
    from .tools.memory_tool import (
        ForgetMemoryTool, MaintainMemoryTool, PersistentMemoryTool, QueryMemoryTool,
        SummarizeMemoryTool,
    )
    from .tools.search import SearchCodebaseTool
    from .tools.semantic import IndexCodebaseTool, SemanticSearchTool
    from .tools.shell import ShellTool
    from .tools.web import FetchUrlTool, WebSearchTool

    registry.register(ShellTool(), APPLY_PATCH)
    for tool in (
        ReadFileTool(), ReadFileLinesTool(), WriteFileTool(), DeleteFileTool(),
        ListDirectoryTool(), ListFilesRecursiveTool(), SearchCodebaseTool(),
        PersistentMemoryTool(), QueryMemoryTool(), ForgetMemoryTool(), SummarizeMemoryTool(),
        MaintainMemoryTool(), FetchUrlTool(), WebSearchTool(),
        SemanticSearchTool(), IndexCodebaseTool(),
    ):
        registry.register(tool)
    return registry


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="codex-agent",
        description="Terminal coding agent",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to config YAML file",
        default=None,
    )
    parser.add_argument(
        "-p", "--provider",
        help=f"LLM provider ({', '.join(ProviderFactory.available())})",
        default=None,
    )
    parser.add_argument(
        "-m", "--model",
        help="Model name to use",
        default=None,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report side effects instead of performing them",
    )
    parser.add_argument(
        "--approval-policy",
        choices=["suggest", "auto-edit", "full-auto"],
        default=None,
        help="Which actions run without asking (default: suggest)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    )
    parser.add_argument(
        "--workspace",
        help="Working directory for the agent",
        default=None,
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        help="Run this prompt once and exit instead of starting the REPL",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace):
    config = load_config(args.config)

    # Override config with CLI args
    if args.provider:
        config.set("llm.provider", args.provider)
    if args.model:
        config.set("llm.model", args.model)
    if args.dry_run:
        config.set("agent.dry_run", True)
    if args.approval_policy:
        config.set("agent.approval_policy", args.approval_policy)
    if args.workspace:
        config.set("agent.workdir", os.path.abspath(os.path.expanduser(args.workspace)))
    return config, AgentSettings.from_config(config)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config, settings = build_settings(args)

    setup_logging(
        verbosity=args.verbose,
        log_format=config.get("logging.format"),
        log_file=config.get("logging.error_log"),
        default_level=config.get("logging.level", "WARNING"),
    )
    logger = logging.getLogger(__name__)
    logger.info(f"Workspace: {os.path.abspath(settings.workdir)}")

    # Create LLM provider
    try:
        provider = ProviderFactory.create(config)
    except Exception as e:
        print(f"Error creating LLM provider: {e}", file=sys.stderr)
        sys.exit(1)

    agent = AgentLoop(provider, register_tools(ToolRegistry()), settings)
    cli = CLI(agent)

    try:
        if args.prompt:
            asyncio.run(cli.run_prompt(args.prompt))
        else:
            asyncio.run(cli.run())
    except KeyboardInterrupt:
        print("\nInterrupted.")
    except CodexAgentError as e:
        logger.error(f"Agent stopped: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
