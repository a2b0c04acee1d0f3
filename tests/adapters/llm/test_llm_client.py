from __future__ import annotations

import pytest
from tenacity import wait_none

from opencraw.adapters.llm.client import (
    LLMRouter,
    canonicalize_messages,
    detect_provider,
    validate_tools,
)
from opencraw.core.errors import HttpError, InvalidInputError
from opencraw.core.models import (
    ChatMessage,
    ChatResponse,
    ContentDelta,
    Done,
    ToolCall,
    ToolDefinition,
)


class FlakyAdapter:
    """Fails with the queued errors first, then answers."""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = 0
        self.seen: list[list[ChatMessage]] = []

    async def chat(self, messages, tools, *, model):
        self.calls += 1
        self.seen.append(messages)
        if self.errors:
            raise self.errors.pop(0)
        return ChatResponse(message=ChatMessage(role="assistant", content=f"{model} ok"))

    async def chat_stream(self, messages, tools, *, model):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        yield ContentDelta("a")
        yield ContentDelta("b")
        yield Done()


def _router(**adapters) -> LLMRouter:
    return LLMRouter(wait=wait_none(), **adapters)


@pytest.mark.parametrize(
    ("model", "provider"),
    [
        ("claude-3-5-sonnet-latest", "anthropic"),
        ("Claude-3-haiku", "anthropic"),
        ("gpt-4o-mini", "openai"),
        ("llama3", "openai"),
    ],
)
def test_detect_provider(model, provider):
    assert detect_provider(model) == provider


def test_detect_provider_rejects_blank_model():
    with pytest.raises(InvalidInputError):
        detect_provider("  ")


def test_canonicalize_repairs_tool_contract():
    history = [
        ChatMessage(role="tool", content="orphan", tool_call_id="x0"),
        ChatMessage(role="user", content="go"),
        ChatMessage(
            role="assistant",
            tool_calls=[
                ToolCall(id="c1", name="shell", arguments="{bad"),
                ToolCall(id="c2", name="shell", arguments="{}"),
            ],
        ),
        ChatMessage(role="tool", content="one", tool_call_id="c1"),
        ChatMessage(role="tool", content="stray", tool_call_id="zz"),
    ]

    out = canonicalize_messages(history)

    assert [m.role for m in out] == ["user", "assistant", "tool"]
    assert out[1].tool_calls == [ToolCall(id="c1", name="shell", arguments="{}")]
    assert out[2].tool_call_id == "c1"


def test_canonicalize_leaves_valid_history_alone():
    history = [
        ChatMessage(role="system", content="sys"),
        ChatMessage(role="user", content="hi"),
        ChatMessage(role="assistant", content="hello"),
    ]
    assert canonicalize_messages(history) == history


def test_duplicate_tool_names_are_rejected():
    params = {"type": "object"}
    tools = [
        ToolDefinition(name="shell", description="a", parameters=params),
        ToolDefinition(name="shell", description="b", parameters=params),
    ]
    with pytest.raises(InvalidInputError, match="duplicate tool definition name"):
        validate_tools(tools)


async def test_missing_provider_key():
    with pytest.raises(InvalidInputError, match="no API key configured for anthropic"):
        await _router(openai=FlakyAdapter()).chat([], [], model="claude-3-haiku")


async def test_chat_routes_by_model_name():
    openai, anthropic = FlakyAdapter(), FlakyAdapter()
    router = _router(openai=openai, anthropic=anthropic)

    await router.chat([ChatMessage(role="user", content="hi")], [], model="claude-3-haiku")
    response = await router.chat([ChatMessage(role="user", content="hi")], [], model="gpt-4o")

    assert (openai.calls, anthropic.calls) == (1, 1)
    assert response.message.content == "gpt-4o ok"


async def test_chat_retries_retryable_errors():
    adapter = FlakyAdapter([HttpError("503", status_code=503), HttpError("reset")])
    response = await _router(openai=adapter).chat([], [], model="gpt-4o")
    assert adapter.calls == 3
    assert response.message.content == "gpt-4o ok"


async def test_chat_gives_up_after_attempts():
    adapter = FlakyAdapter([HttpError(str(i)) for i in range(5)])
    with pytest.raises(HttpError):
        await _router(openai=adapter).chat([], [], model="gpt-4o")
    assert adapter.calls == 3


async def test_invalid_input_is_not_retried():
    adapter = FlakyAdapter([InvalidInputError("bad")])
    with pytest.raises(InvalidInputError):
        await _router(openai=adapter).chat([], [], model="gpt-4o")
    assert adapter.calls == 1


async def test_stream_retries_until_first_chunk():
    adapter = FlakyAdapter([HttpError("connect failed")])
    chunks = [c async for c in _router(openai=adapter).chat_stream([], [], model="gpt-4o")]
    assert adapter.calls == 2
    assert chunks == [ContentDelta("a"), ContentDelta("b"), Done()]
