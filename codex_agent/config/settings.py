"""
Configuration loader — YAML file + environment variable overrides.
"""

from __future__ import annotations
import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..core.approvals import ApprovalPolicy
from ..prompts.system_prompt import DEFAULT_PREFIX, IDENTITY_MARKER


class Config:
    """Configuration container with dot-access and env var support."""

    def __init__(self, data: dict):
        self._data = data

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by dot-separated key path."""
        keys = key.split(".")
        value = self._data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
            if value is None:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a config value by dot-separated key path."""
        keys = key.split(".")
        d = self._data
        for k in keys[:-1]:
            d = d.setdefault(k, {})
        d[keys[-1]] = value

    @property
    def raw(self) -> dict:
        return self._data

    def __repr__(self) -> str:
        return f"Config({self._data})"


ENV_MAPPINGS = {
    "CODEX_PROVIDER": "llm.provider",
    "CODEX_MODEL": "llm.model",
    "OPENAI_API_KEY": "providers.openai.api_key",
    "OPENAI_BASE_URL": "providers.openai.base_url",
    "OPENAI_TIMEOUT_MS": "providers.openai.timeout_ms",
    "ANTHROPIC_API_KEY": "providers.anthropic.api_key",
    "OLLAMA_BASE_URL": "providers.ollama.base_url",
    "OPENAI_RATE_LIMIT_RETRY_WAIT_MS": "agent.rate_limit_wait_ms",
    "CODEX_DRY_RUN": "agent.dry_run",
    "CODEX_APPROVAL_POLICY": "agent.approval_policy",
    "CODEX_WORKDIR": "agent.workdir",
    "CODEX_LOG_FORMAT": "logging.format",
    "CODEX_MEMORY_CONTEXT": "agent.memory_context",
}


def _coerce_env(value: str) -> Any:
    """Turn "true"/"false" and numeric strings into their Python values."""
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file with env var overrides.

    Priority (highest to lowest):
    1. Environment variables (CODEX_MODEL, OPENAI_API_KEY, etc. see ENV_MAPPINGS)
    2. User config file (if provided)
    3. Default config
    """
    default_path = Path(__file__).parent / "default_config.yaml"
    with open(default_path) as f:
        data = yaml.safe_load(f)

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            user_data = yaml.safe_load(f) or {}
        data = _deep_merge(data, user_data)

    config = Config(data)
    for env_key, config_key in ENV_MAPPINGS.items():
        env_val = os.getenv(env_key)
        if env_val is not None and env_val != "":
            if config_key.endswith("api_key") or config_key.endswith("base_url"):
                config.set(config_key, env_val)
            else:
                config.set(config_key, _coerce_env(env_val))

    return config


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay dict into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


DRY_RUN_NOTICE = (
    "DRY RUN MODE: side-effecting tools (shell commands, patches, file "
    "writes and deletes, memory writes) do not change anything; they only "
    "report what they would have done."
)

RELEVANT_MEMORY_HEADER = "--- Relevant Project Memory ---"


@dataclass
class AgentSettings:
    """The subset of configuration the turn engine reads."""
    model: str = "o4-mini"
    provider: str = "openai"
    instructions: str = ""
    base_instructions: str = DEFAULT_PREFIX
    dry_run: bool = False
    approval_policy: ApprovalPolicy = ApprovalPolicy.SUGGEST
    max_attempts: int = 5
    rate_limit_wait_ms: float = 2500.0
    flush_delay: float = 0.03
    loop_threshold: int = 2
    max_parallel_tools: int = 10
    workdir: str = "."
    exec_timeout_ms: int = 120_000
    max_output_chars: int = 30_000
    memory_file: str = ".codex/memory.md"
    memory_context: bool = True
    memory_context_limit: int = 5

    @classmethod
    def from_config(cls, config: Config) -> "AgentSettings":
        return cls(
            model=str(config.get("llm.model", cls.model)),
            provider=str(config.get("llm.provider", cls.provider)),
            instructions=config.get("llm.instructions", "") or "",
            base_instructions=config.get("llm.base_instructions", DEFAULT_PREFIX) or "",
            dry_run=bool(config.get("agent.dry_run", False)),
            approval_policy=ApprovalPolicy.parse(config.get("agent.approval_policy")),
            max_attempts=int(config.get("agent.max_attempts", cls.max_attempts)),
            rate_limit_wait_ms=float(config.get("agent.rate_limit_wait_ms", cls.rate_limit_wait_ms)),
            flush_delay=float(config.get("agent.flush_delay", cls.flush_delay)),
            loop_threshold=int(config.get("agent.loop_threshold", cls.loop_threshold)),
            max_parallel_tools=int(config.get("agent.max_parallel_tools", cls.max_parallel_tools)),
            workdir=str(config.get("agent.workdir", cls.workdir)),
            exec_timeout_ms=int(config.get("agent.exec_timeout_ms", cls.exec_timeout_ms)),
            max_output_chars=int(config.get("agent.max_output_chars", cls.max_output_chars)),
            memory_file=str(config.get("agent.memory_file", cls.memory_file)),
            memory_context=bool(config.get("agent.memory_context", True)),
            memory_context_limit=int(config.get("agent.memory_context_limit", cls.memory_context_limit)),
        )

    @property
    def reasoning_effort(self) -> Optional[str]:
        return "high" if self.model.startswith("o") else None

    def system_instructions(self, relevant_memory: Optional[list[str]] = None) -> str:
        """Default prefix, user instructions, relevant memory and the dry-run notice, in that order.

        The prefix is skipped when the user's instructions already carry its
        identity line.
        """
        prefix = "" if IDENTITY_MARKER in self.instructions else self.base_instructions
        memory = ""
        if relevant_memory:
            memory = "\n" + RELEVANT_MEMORY_HEADER + "\n" + "\n".join(relevant_memory)
        dry_run = "\n" + DRY_RUN_NOTICE if self.dry_run else ""
        return "\n".join(part for part in (prefix, self.instructions, memory, dry_run) if part)
