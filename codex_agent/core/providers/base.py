"""
Abstract base class for LLM providers.
All providers (OpenAI, Anthropic, Ollama) implement this interface and
translate their wire events into the internal StreamDelta shape.
"""

from __future__ import annotations
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from ..cancellation import AbortSignal
from ..models import Message, ProviderRequest, StreamDelta

logger = logging.getLogger(__name__)


class BaseProvider(ABC):
    """Abstract LLM provider interface."""

    display_name: str = "LLM"

    def __init__(self, model: str, base_url: Optional[str] = None, api_key: Optional[str] = None, **kwargs):
        self.model = model
        self.base_url = base_url
        self._api_key = api_key
        self.temperature = kwargs.get("temperature")
        self.max_tokens = kwargs.get("max_tokens", 4096)
        self.timeout = kwargs.get("timeout_ms", 300_000) / 1000

    @property
    def api_key(self) -> Optional[str]:
        """Access the API key (property to avoid accidental logging)."""
        return self._api_key

    def __repr__(self) -> str:
        """Mask API key in repr to prevent accidental logging."""
        masked = f"***{self._api_key[-4:]}" if self._api_key and len(self._api_key) > 4 else "***"
        return (
            f"{self.__class__.__name__}(model={self.model!r}, "
            f"api_key={masked!r})"
        )

    @abstractmethod
    async def stream(
        self,
        request: ProviderRequest,
        abort_signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[StreamDelta]:
        """
        Open a streamed completion and return an async iterator of deltas.

        Opening the request happens inside this coroutine so that connection
        and HTTP errors surface here, where the retry policy can see them.
        Errors raised while iterating end the turn.
        """

    @property
    def provider_name(self) -> str:
        return self.__class__.__name__


def tool_result_content(message: Message) -> str:
    """Tool messages carry ``{"output", "metadata"}`` JSON; pass it through as text."""
    return message.text


def parse_arguments(raw: str) -> Any:
    """Best-effort JSON decode for providers that want structured tool input."""
    try:
        value = json.loads(raw or "{}")
    except ValueError:
        logger.debug(f"Sending unparseable tool arguments as raw text: {raw[:80]}")
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}


class ProviderFactory:
    """Create LLM provider from config."""

    _providers: dict[str, type[BaseProvider]] = {}

    @classmethod
    def register(cls, name: str, provider_class: type[BaseProvider]):
        cls._providers[name] = provider_class

    @classmethod
    def available(cls) -> list[str]:
        return sorted(cls._providers)

    @classmethod
    def create(cls, config) -> BaseProvider:
        """
        Create provider from a Config (or plain dict).

        Config structure:
            llm:
              provider: "openai"
              model: "o4-mini"
            providers:
              openai:
                api_key: "..."
                base_url: "https://api.openai.com/v1"
        """
        raw = config.raw if hasattr(config, "raw") else config
        llm_config = raw.get("llm", {})
        provider_name = llm_config.get("provider", "openai")
        provider_config = dict(raw.get("providers", {}).get(provider_name) or {})

        if provider_name not in cls._providers:
            raise ValueError(
                f"Unknown provider: {provider_name}. "
                f"Available: {cls.available()}"
            )

        options = {
            "temperature": llm_config.get("temperature"),
            "max_tokens": llm_config.get("max_tokens", 4096),
        }
        options.update({k: v for k, v in provider_config.items() if v not in ("", None)})
        provider_class = cls._providers[provider_name]
        return provider_class(model=llm_config.get("model", "o4-mini"), **options)
