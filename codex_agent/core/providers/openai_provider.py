"""
OpenAI LLM Provider — chat-completions streaming with native tool calls.

Works against any OpenAI-compatible endpoint (set ``base_url``).
"""

from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Optional

from .base import BaseProvider, ProviderFactory
from ..cancellation import AbortSignal
from ..models import Message, ProviderRequest, StreamDelta, ToolCallDelta, ToolSchema

logger = logging.getLogger(__name__)


def chunk_to_delta(chunk: Any) -> Optional[StreamDelta]:
    """Convert one ``ChatCompletionChunk`` into a StreamDelta (None for empty chunks)."""
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return None
    choice = choices[0]
    delta = getattr(choice, "delta", None)

    tool_calls = []
    for tc in (getattr(delta, "tool_calls", None) or []):
        function = getattr(tc, "function", None)
        tool_calls.append(ToolCallDelta(
            index=getattr(tc, "index", 0) or 0,
            id=getattr(tc, "id", None),
            name=getattr(function, "name", None),
            arguments=getattr(function, "arguments", None),
        ))

    return StreamDelta(
        content=getattr(delta, "content", None),
        reasoning=getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None),
        tool_calls=tool_calls,
        finish_reason=getattr(choice, "finish_reason", None),
    )


def convert_tools(tools: list[ToolSchema]) -> list[dict]:
    """Convert to OpenAI tools format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


def convert_messages(messages: list[Message]) -> list[dict]:
    """Convert internal messages to OpenAI chat format."""
    result = []
    for msg in messages:
        if msg.role == "tool":
            result.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.text,
            })
        elif msg.role == "assistant" and msg.tool_calls:
            result.append({
                "role": "assistant",
                "content": msg.text or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in msg.tool_calls
                ],
            })
        else:
            result.append({"role": msg.role, "content": msg.content or ""})
    return result


class OpenAIProvider(BaseProvider):
    """OpenAI provider with native tool_use support."""

    display_name = "OpenAI"

    def __init__(self, model: str = "o4-mini", api_key: Optional[str] = None,
                 base_url: Optional[str] = None, client: Any = None, **kwargs):
        super().__init__(model=model, base_url=base_url, api_key=api_key, **kwargs)
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ImportError(
                    "OpenAI package not installed. Run: pip install 'codex-agent[openai]'"
                ) from e
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url or None,
                timeout=self.timeout,
            )
        return self._client

    def build_params(self, request: ProviderRequest) -> dict:
        params: dict = {
            "model": request.model or self.model,
            "messages": convert_messages(request.messages),
            "stream": True,
        }
        if request.tools:
            params["tools"] = convert_tools(request.tools)
            params["tool_choice"] = "auto"
        if request.reasoning_effort:
            params["reasoning_effort"] = request.reasoning_effort
        elif self.temperature is not None:
            params["temperature"] = self.temperature
        return params

    async def stream(
        self,
        request: ProviderRequest,
        abort_signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[StreamDelta]:
        client = self._get_client()
        params = self.build_params(request)
        logger.debug(
            f"OpenAI request: model={params['model']}, messages={len(params['messages'])}, "
            f"tools={len(params.get('tools', []))}"
        )
        raw_stream = await client.chat.completions.create(**params)
        return self._deltas(raw_stream)

    @staticmethod
    async def _deltas(raw_stream) -> AsyncIterator[StreamDelta]:
        try:
            async for chunk in raw_stream:
                delta = chunk_to_delta(chunk)
                if delta is not None:
                    yield delta
        finally:
            close = getattr(raw_stream, "close", None)
            if close is not None:
                await close()


ProviderFactory.register("openai", OpenAIProvider)
