"""Anthropic Messages API adapter.

Converts the OpenAI-shaped history into Anthropic content blocks: system
messages are joined into the ``system`` field, assistant tool calls become
``tool_use`` blocks and tool results become ``tool_result`` blocks inside a
user turn. Tool names pass through unchanged.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from opencraw.adapters.llm.names import ANTHROPIC_MAX_TOOL_NAME, TOOL_NAME_RE
from opencraw.core.errors import HttpError, InvalidInputError, ResponseFormatError
from opencraw.core.models import (
    ChatMessage,
    ChatResponse,
    ContentDelta,
    Done,
    ReasoningDelta,
    StreamChunk,
    ToolCall,
    ToolCallArgumentsDelta,
    ToolCallStart,
    ToolDefinition,
    Usage,
)

HTTP_TIMEOUT_SECONDS = 60.0
MAX_TOKENS = 2048


def _translate_error(e: anthropic.AnthropicError) -> HttpError:
    if isinstance(e, anthropic.APIStatusError):
        return HttpError(f"anthropic: HTTP {e.status_code}: {e.message}", status_code=e.status_code)
    return HttpError(f"anthropic: {e}")


def _tool_input(arguments: str) -> dict[str, Any]:
    try:
        value = json.loads(arguments) if arguments.strip() else {}
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def to_anthropic_messages(messages: list[ChatMessage]) -> tuple[str, list[dict[str, Any]]]:
    """
    Split a history into the system text and Anthropic ``messages``.

    Consecutive tool results are folded into a single user turn, as the
    Messages API expects all results for one assistant turn together.
    """
    system_parts: list[str] = []
    out: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
        elif message.role == "user":
            out.append({"role": "user", "content": message.content})
        elif message.role == "assistant":
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": _tool_input(call.arguments),
                    }
                )
            out.append({"role": "assistant", "content": blocks or message.content})
        else:
            result = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.content,
            }
            previous = out[-1] if out else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and previous["content"]
                and previous["content"][0].get("type") == "tool_result"
            ):
                previous["content"].append(result)
            else:
                out.append({"role": "user", "content": [result]})
    return "\n\n".join(system_parts), out


def _wire_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    wire = []
    for tool in tools:
        if len(tool.name) > ANTHROPIC_MAX_TOOL_NAME or not TOOL_NAME_RE.match(tool.name):
            raise InvalidInputError(f"tool name '{tool.name}' is not accepted by Anthropic")
        wire.append(
            {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}
        )
    return wire


class AnthropicAdapter:
    """LLM adapter for Anthropic models (``claude-*``)."""

    def __init__(self, api_key: str, client: AsyncAnthropic | None = None) -> None:
        self._client = client or AsyncAnthropic(
            api_key=api_key,
            timeout=HTTP_TIMEOUT_SECONDS,
            max_retries=0,
        )

    def _request(
        self, messages: list[ChatMessage], tools: list[ToolDefinition], model: str
    ) -> dict[str, Any]:
        system, wire_messages = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": MAX_TOKENS,
            "messages": wire_messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = _wire_tools(tools)
        return kwargs

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> ChatResponse:
        kwargs = self._request(messages, tools, model)
        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise _translate_error(e) from e

        text: list[str] = []
        calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))
        if response.usage is None:
            raise ResponseFormatError("anthropic: response has no usage")
        return ChatResponse(
            message=ChatMessage(role="assistant", content="".join(text), tool_calls=calls),
            usage=Usage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
            finish_reason=response.stop_reason or "stop",
        )

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> AsyncIterator[StreamChunk]:
        """Map raw Messages API stream events onto stream chunks."""
        kwargs = self._request(messages, tools, model)
        usage = Usage()
        finish_reason = "stop"
        try:
            stream = await self._client.messages.create(**kwargs, stream=True)
            async for event in stream:
                match event.type:
                    case "message_start":
                        usage.prompt_tokens = event.message.usage.input_tokens
                    case "content_block_start":
                        block = event.content_block
                        if block.type == "tool_use":
                            yield ToolCallStart(id=block.id, name=block.name)
                    case "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta":
                            yield ContentDelta(delta.text)
                        elif delta.type == "input_json_delta":
                            if delta.partial_json:
                                yield ToolCallArgumentsDelta(delta.partial_json)
                        elif delta.type == "thinking_delta":
                            yield ReasoningDelta(delta.thinking)
                    case "message_delta":
                        usage.completion_tokens = event.usage.output_tokens
                        if event.delta.stop_reason:
                            finish_reason = event.delta.stop_reason
                    case "message_stop":
                        break
        except anthropic.AnthropicError as e:
            raise _translate_error(e) from e

        yield Done(usage=usage, finish_reason=finish_reason)
