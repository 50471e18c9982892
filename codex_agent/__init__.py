"""Terminal coding agent: turn orchestration, tool dispatch and provider adapters."""

__version__ = "0.1.0"
