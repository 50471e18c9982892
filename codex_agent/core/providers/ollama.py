"""
Ollama LLM Provider — NDJSON streaming over httpx against ``/api/chat``.

Models with native tool support return complete ``tool_calls`` objects; each
becomes a single-chunk tool-call delta. Models without it answer in plain
content, which the turn loop's tool-call recovery then inspects.
"""

from __future__ import annotations
import json
import logging
from typing import AsyncIterator, Optional

import httpx

from .base import BaseProvider, ProviderFactory, parse_arguments
from ..cancellation import AbortSignal
from ..errors import ProviderError, ProviderTerminalError, ProviderTransientError
from ..models import Message, ProviderRequest, StreamDelta, ToolCall, ToolCallDelta, ToolSchema

logger = logging.getLogger(__name__)


def line_to_delta(data: dict, next_index: int = 0) -> StreamDelta:
    """Convert one decoded NDJSON line into a StreamDelta."""
    message = data.get("message") or {}
    tool_calls = []
    for offset, tc in enumerate(message.get("tool_calls") or []):
        function = tc.get("function") or {}
        arguments = function.get("arguments", {})
        tool_calls.append(ToolCallDelta(
            index=next_index + offset,
            id=tc.get("id") or ToolCall.generate_id("call_ollama"),
            name=function.get("name", ""),
            arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
        ))
    finish = None
    if data.get("done"):
        finish = "tool_calls" if tool_calls else (data.get("done_reason") or "stop")
    return StreamDelta(
        content=message.get("content") or None,
        reasoning=message.get("thinking") or None,
        tool_calls=tool_calls,
        finish_reason=finish,
    )


class OllamaProvider(BaseProvider):
    """Ollama provider using the chat endpoint's native tool calling."""

    display_name = "Ollama"

    # Max characters for individual message content sent to Ollama.
    # Prevents the context from exploding with large tool results or file contents.
    MAX_MSG_CHARS = 12000

    def __init__(self, model: str, base_url: str = "http://localhost:11434",
                 transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        super().__init__(model=model, base_url=(base_url or "http://localhost:11434").rstrip("/"), **kwargs)
        self._transport = transport

    def build_payload(self, request: ProviderRequest) -> dict:
        payload: dict = {
            "model": request.model or self.model,
            "messages": self._convert_messages(request.messages),
            "stream": True,
            "options": {"num_predict": self.max_tokens},
        }
        if self.temperature is not None:
            payload["options"]["temperature"] = self.temperature
        if request.tools:
            payload["tools"] = self._convert_tools(request.tools)
        return payload

    async def stream(
        self,
        request: ProviderRequest,
        abort_signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[StreamDelta]:
        client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        try:
            http_request = client.build_request(
                "POST", f"{self.base_url}/api/chat", json=self.build_payload(request),
            )
            response = await client.send(http_request, stream=True)
        except BaseException:
            await client.aclose()
            raise

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            await client.aclose()
            error_class = ProviderTransientError if response.status_code >= 500 else ProviderTerminalError
            raise error_class(_error_message(body, response.status_code), status=response.status_code)

        return self._deltas(client, response)

    @staticmethod
    async def _deltas(client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[StreamDelta]:
        tool_count = 0
        try:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed Ollama line: {line[:120]}")
                    continue
                if data.get("error"):
                    raise ProviderError(str(data["error"]))
                delta = line_to_delta(data, tool_count)
                tool_count += len(delta.tool_calls)
                yield delta
                if delta.finish_reason:
                    break
        finally:
            await response.aclose()
            await client.aclose()

    @staticmethod
    def _convert_tools(tools: list[ToolSchema]) -> list[dict]:
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

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        """Convert internal messages to Ollama format, truncating large content."""
        ollama_msgs = []
        for msg in messages:
            content = self._truncate(msg.text, self.MAX_MSG_CHARS)
            if msg.role == "assistant" and msg.tool_calls:
                ollama_msgs.append({
                    "role": "assistant",
                    "content": content,
                    "tool_calls": [
                        {"function": {"name": tc.name, "arguments": parse_arguments(tc.arguments)}}
                        for tc in msg.tool_calls
                    ],
                })
            else:
                ollama_msgs.append({"role": msg.role, "content": content})
        return ollama_msgs

    @staticmethod
    def _truncate(text: str, max_chars: int) -> str:
        """Truncate text to max_chars, adding a notice if trimmed."""
        if not text or len(text) <= max_chars:
            return text
        return text[:max_chars] + f"\n\n[... truncated, {len(text) - max_chars} chars omitted ...]"


def _error_message(body: str, status: int) -> str:
    try:
        return str(json.loads(body).get("error") or body)
    except (ValueError, AttributeError):
        return body or f"HTTP {status}"


ProviderFactory.register("ollama", OllamaProvider)
