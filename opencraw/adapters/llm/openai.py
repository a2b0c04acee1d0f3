"""OpenAI-compatible LLM adapter.

Works with any provider that exposes an OpenAI-compatible chat-completions API.
Tool names are sanitized to the OpenAI naming rule before each request and
mapped back to the registered names in every response, batch or streamed.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from opencraw.adapters.llm.names import OPENAI_MAX_TOOL_NAME, ToolNameMap
from opencraw.core.errors import HttpError, ResponseFormatError, StreamParseError
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


def _extract_reasoning_content(message_part: Any) -> str | None:
    for attr in ("reasoning_content", "reasoning"):
        direct = getattr(message_part, attr, None)
        if isinstance(direct, str):
            return direct
    model_extra = getattr(message_part, "model_extra", None)
    if isinstance(model_extra, dict):
        for key in ("reasoning_content", "reasoning"):
            extra = model_extra.get(key)
            if isinstance(extra, str):
                return extra
    return None


def _usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(raw, "completion_tokens", 0) or 0,
    )


def _translate_error(e: openai.OpenAIError) -> HttpError:
    if isinstance(e, openai.APIStatusError):
        return HttpError(f"openai: HTTP {e.status_code}: {e.message}", status_code=e.status_code)
    return HttpError(f"openai: {e}")


class OpenAIAdapter:
    """
    LLM adapter for OpenAI-compatible endpoints.

    Implements LLMPort via structural subtyping (no explicit inheritance).
    """

    def __init__(self, api_key: str, api_base: str | None = None, client: AsyncOpenAI | None = None) -> None:
        """
        Args:
            api_key: API key for authentication.
            api_base: Base URL for the API; None uses the SDK default.
            client: Pre-built SDK client (tests inject one with a mock transport).
        """
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=api_base,
            timeout=HTTP_TIMEOUT_SECONDS,
            max_retries=0,
        )

    def _request(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model: str,
    ) -> tuple[dict[str, Any], ToolNameMap]:
        names = ToolNameMap((t.name for t in tools), max_length=OPENAI_MAX_TOOL_NAME)
        wire_messages = []
        for message in messages:
            wire = message.to_openai_dict()
            for call in wire.get("tool_calls", []):
                call["function"]["name"] = names.sanitize(call["function"]["name"])
            wire_messages.append(wire)
        kwargs: dict[str, Any] = {"model": model, "messages": wire_messages}
        if tools:
            wire_tools = []
            for tool in tools:
                definition = tool.to_openai_dict()
                definition["function"]["name"] = names.sanitize(tool.name)
                wire_tools.append(definition)
            kwargs["tools"] = wire_tools
            kwargs["tool_choice"] = "auto"
        return kwargs, names

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> ChatResponse:
        """Non-streaming completion."""
        kwargs, names = self._request(messages, tools, model)
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

        if not response.choices:
            raise ResponseFormatError("openai: response has no choices")
        choice = response.choices[0]
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=names.restore(tc.function.name),
                arguments=tc.function.arguments or "",
            )
            for tc in choice.message.tool_calls or []
        ]
        return ChatResponse(
            message=ChatMessage(
                role="assistant",
                content=choice.message.content or "",
                tool_calls=tool_calls,
            ),
            usage=_usage(response.usage),
            finish_reason=choice.finish_reason or "stop",
        )

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> AsyncIterator[StreamChunk]:
        """Stream response chunks; tool calls arrive as start + argument deltas."""
        kwargs, names = self._request(messages, tools, model)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        usage = Usage()
        finish_reason = "stop"
        started: set[int] = set()
        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async with stream:
                async for chunk in stream:
                    if chunk.usage is not None:
                        usage = _usage(chunk.usage)
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                    delta = choice.delta
                    if delta is None:
                        continue

                    if delta.content:
                        yield ContentDelta(delta.content)
                    reasoning = _extract_reasoning_content(delta)
                    if reasoning:
                        yield ReasoningDelta(reasoning)

                    for tc_delta in delta.tool_calls or []:
                        if tc_delta.index not in started:
                            if not tc_delta.id or tc_delta.function is None or not tc_delta.function.name:
                                raise StreamParseError("openai: tool call started without id or name")
                            started.add(tc_delta.index)
                            yield ToolCallStart(id=tc_delta.id, name=names.restore(tc_delta.function.name))
                        if tc_delta.function is not None and tc_delta.function.arguments:
                            yield ToolCallArgumentsDelta(tc_delta.function.arguments)
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

        yield Done(usage=usage, finish_reason=finish_reason)
