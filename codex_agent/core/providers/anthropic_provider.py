"""
Anthropic LLM Provider — Messages API streaming with native tool_use.

Anthropic streams typed content blocks rather than OpenAI-style deltas;
``AnthropicEventMapper`` folds them into the same StreamDelta shape.
"""

from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Optional

from .base import BaseProvider, ProviderFactory, parse_arguments
from ..cancellation import AbortSignal
from ..models import Message, ProviderRequest, StreamDelta, ToolCallDelta, ToolSchema

logger = logging.getLogger(__name__)

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


class AnthropicEventMapper:
    """Stateful translation of raw stream events into StreamDeltas."""

    def __init__(self):
        self._tool_index: dict[int, int] = {}  # content block index -> tool call index

    def map(self, event: Any) -> Optional[StreamDelta]:
        kind = getattr(event, "type", None)

        if kind == "content_block_start":
            block = event.content_block
            if getattr(block, "type", None) == "tool_use":
                position = len(self._tool_index)
                self._tool_index[event.index] = position
                return StreamDelta(tool_calls=[
                    ToolCallDelta(index=position, id=block.id, name=block.name),
                ])
            return None

        if kind == "content_block_delta":
            delta = event.delta
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta":
                return StreamDelta(content=delta.text)
            if delta_type == "thinking_delta":
                return StreamDelta(reasoning=delta.thinking)
            if delta_type == "input_json_delta":
                position = self._tool_index.get(event.index, 0)
                return StreamDelta(tool_calls=[
                    ToolCallDelta(index=position, arguments=delta.partial_json),
                ])
            return None

        if kind == "message_delta":
            stop = getattr(event.delta, "stop_reason", None)
            if stop:
                return StreamDelta(finish_reason=_STOP_REASONS.get(stop, stop))
        return None


def convert_tools(tools: list[ToolSchema]) -> list[dict]:
    """Convert to Anthropic tools format."""
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def _is_error(tool_message: Message) -> bool:
    try:
        payload = json.loads(tool_message.text)
        return int(payload.get("metadata", {}).get("exit_code", 0)) != 0
    except (ValueError, AttributeError, TypeError):
        return False


def convert_messages(messages: list[Message]) -> tuple[str, list[dict]]:
    """Split out the system prompt and convert the rest to Anthropic format.

    Consecutive tool results are merged into one user turn, as the API requires.
    """
    system_parts: list[str] = []
    result: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.text)
        elif msg.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.text,
                "is_error": _is_error(msg),
            }
            previous = result[-1] if result else None
            if previous and previous["role"] == "user" and isinstance(previous["content"], list) \
                    and all(b.get("type") == "tool_result" for b in previous["content"]):
                previous["content"].append(block)
            else:
                result.append({"role": "user", "content": [block]})
        elif msg.role == "assistant" and msg.tool_calls:
            content = []
            if msg.text:
                content.append({"type": "text", "text": msg.text})
            for tc in msg.tool_calls:
                content.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": parse_arguments(tc.arguments),
                })
            result.append({"role": "assistant", "content": content})
        else:
            result.append({"role": msg.role, "content": msg.text})
    return "\n\n".join(p for p in system_parts if p), result


class AnthropicProvider(BaseProvider):
    """Anthropic provider with native tool_use support."""

    display_name = "Anthropic"

    def __init__(self, model: str = "claude-sonnet-4-5",
                 api_key: Optional[str] = None, client: Any = None, **kwargs):
        super().__init__(model=model, api_key=api_key, **kwargs)
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise ImportError(
                    "Anthropic package not installed. Run: pip install 'codex-agent[anthropic]'"
                ) from e
            self._client = AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def build_params(self, request: ProviderRequest) -> dict:
        system, messages = convert_messages(request.messages)
        params: dict = {
            "model": request.model or self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if system:
            params["system"] = system
        if request.tools:
            params["tools"] = convert_tools(request.tools)
        if self.temperature is not None:
            params["temperature"] = self.temperature
        return params

    async def stream(
        self,
        request: ProviderRequest,
        abort_signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[StreamDelta]:
        client = self._get_client()
        params = self.build_params(request)
        logger.debug(f"Anthropic request: model={params['model']}, messages={len(params['messages'])}")
        raw_stream = await client.messages.create(**params)
        return self._deltas(raw_stream)

    @staticmethod
    async def _deltas(raw_stream) -> AsyncIterator[StreamDelta]:
        mapper = AnthropicEventMapper()
        try:
            async for event in raw_stream:
                delta = mapper.map(event)
                if delta is not None:
                    yield delta
        finally:
            close = getattr(raw_stream, "close", None)
            if close is not None:
                await close()


ProviderFactory.register("anthropic", AnthropicProvider)
