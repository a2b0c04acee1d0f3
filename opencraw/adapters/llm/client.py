"""
Provider routing, request canonicalization and retries.

``LLMRouter`` implements LLMPort. It picks the provider family from the model
name (``claude-*`` goes to Anthropic, everything else to the OpenAI-compatible
adapter), repairs the tool-call contract of the outgoing history, and retries
retryable failures with exponential backoff.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Literal

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from opencraw.adapters.llm.anthropic import AnthropicAdapter
from opencraw.adapters.llm.openai import OpenAIAdapter
from opencraw.core.errors import InvalidInputError, LlmError
from opencraw.core.models import (
    ChatMessage,
    ChatResponse,
    StreamChunk,
    ToolCall,
    ToolDefinition,
)

type Provider = Literal["openai", "anthropic"]

DEFAULT_ATTEMPTS = 3


def detect_provider(model: str) -> Provider:
    if not model.strip():
        raise InvalidInputError("model must not be empty")
    return "anthropic" if model.strip().lower().startswith("claude-") else "openai"


def _valid_json(arguments: str) -> bool:
    try:
        json.loads(arguments)
    except json.JSONDecodeError:
        return False
    return True


def canonicalize_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """
    Repair the tool-call contract before a request.

    Each assistant message keeps only the tool calls answered by a directly
    following tool message; tool results that answer nothing are dropped, and
    argument strings that are not valid JSON become ``{}``.
    """
    out: list[ChatMessage] = []
    dropped = stripped = normalized = 0
    i = 0
    while i < len(messages):
        message = messages[i]
        if message.role == "tool":
            dropped += 1
            i += 1
            continue
        if message.role != "assistant":
            out.append(message)
            i += 1
            continue

        j = i + 1
        results: list[ChatMessage] = []
        while j < len(messages) and messages[j].role == "tool":
            results.append(messages[j])
            j += 1

        consumed = [False] * len(results)
        calls: list[ToolCall] = []
        answers: list[ChatMessage] = []
        for call in message.tool_calls:
            arguments = call.arguments
            if not _valid_json(arguments):
                arguments = "{}"
                normalized += 1
            match = next(
                (k for k, r in enumerate(results) if not consumed[k] and r.tool_call_id == call.id),
                None,
            )
            if match is None:
                stripped += 1
                continue
            consumed[match] = True
            calls.append(ToolCall(id=call.id, name=call.name, arguments=arguments))
            answers.append(results[match])
        dropped += consumed.count(False)

        out.append(ChatMessage(role="assistant", content=message.content, tool_calls=calls))
        out.extend(answers)
        i = j

    if dropped or stripped or normalized:
        logger.debug(
            "llm: canonicalized history (dropped {} orphan results, stripped {} calls, "
            "normalized {} arguments)",
            dropped,
            stripped,
            normalized,
        )
    return out


def validate_tools(tools: list[ToolDefinition]) -> None:
    seen: set[str] = set()
    for tool in tools:
        if not tool.name:
            raise InvalidInputError("tool name must not be empty")
        if tool.name in seen:
            raise InvalidInputError(f"duplicate tool definition name '{tool.name}'")
        seen.add(tool.name)


def _is_retryable(e: BaseException) -> bool:
    return isinstance(e, LlmError) and e.retryable


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning("llm: attempt {} failed ({}), retrying", state.attempt_number, error)


class LLMRouter:
    """
    LLMPort implementation over the OpenAI and Anthropic adapters.

    Args:
        openai: Adapter for OpenAI-compatible models, or None when no key is set.
        anthropic: Adapter for ``claude-*`` models, or None when no key is set.
        attempts: Total attempts for retryable failures.
        wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        *,
        openai: OpenAIAdapter | None = None,
        anthropic: AnthropicAdapter | None = None,
        attempts: int = DEFAULT_ATTEMPTS,
        wait: wait_base | None = None,
    ) -> None:
        self._adapters: dict[Provider, OpenAIAdapter | AnthropicAdapter | None] = {
            "openai": openai,
            "anthropic": anthropic,
        }
        self._attempts = attempts
        self._wait = wait if wait is not None else wait_exponential(multiplier=0.5, max=8)

    def _adapter(self, model: str) -> OpenAIAdapter | AnthropicAdapter:
        provider = detect_provider(model)
        adapter = self._adapters[provider]
        if adapter is None:
            raise InvalidInputError(f"no API key configured for {provider} model '{model}'")
        return adapter

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            wait=self._wait,
            stop=stop_after_attempt(self._attempts),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> ChatResponse:
        adapter = self._adapter(model)
        validate_tools(tools)
        prepared = canonicalize_messages(messages)
        async for attempt in self._retrying():
            with attempt:
                response = await adapter.chat(prepared, tools, model=model)
        logger.debug(
            "llm: {} answered ({} tool calls, {}+{} tokens)",
            model,
            len(response.message.tool_calls),
            response.usage.prompt_tokens,
            response.usage.completion_tokens,
        )
        return response

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion. Opening the stream (up to the first chunk) is
        retried; failures after that propagate to the caller unchanged.
        """
        adapter = self._adapter(model)
        validate_tools(tools)
        prepared = canonicalize_messages(messages)

        stream: AsyncIterator[StreamChunk] | None = None
        first: StreamChunk | None = None
        async for attempt in self._retrying():
            with attempt:
                stream = aiter(adapter.chat_stream(prepared, tools, model=model))
                first = await anext(stream, None)
        if stream is None or first is None:
            return
        yield first
        async for chunk in stream:
            yield chunk
