"""
Tests for the agent loop using a scripted LLM.

The LLM double replays pre-defined chunk sequences; tools are real or tiny
in-memory doubles. No network calls.
"""

from __future__ import annotations

import json

import pytest

from opencraw.adapters.tools.filesystem import FilesystemTool
from opencraw.core.agent import APOLOGY, TRUNCATION_NOTICE, AgentLoop, AgentSettings
from opencraw.core.errors import HttpError, InvalidInputError
from opencraw.core.models import (
    ChatMessage,
    ContentDelta,
    Done,
    ModelPinning,
    ReasoningDelta,
    RiskLevel,
    Session,
    ToolCallArgumentsDelta,
    ToolCallStart,
    Usage,
)
from opencraw.core.registry import ToolRegistry


class ScriptedLLM:
    """LLM test double; each entry is a chunk list or an exception to raise."""

    def __init__(self, script):
        self._script = list(script)
        self.models: list[str] = []
        self.prompts: list[list[ChatMessage]] = []

    async def chat(self, messages, tools, *, model):
        raise NotImplementedError

    async def chat_stream(self, messages, tools, *, model):
        self.models.append(model)
        self.prompts.append(list(messages))
        step = self._script.pop(0)
        if isinstance(step, Exception):
            raise step
        for chunk in step:
            yield chunk


def text(reply: str, prompt_tokens: int = 0) -> list:
    return [ContentDelta(reply), Done(usage=Usage(prompt_tokens=prompt_tokens))]


def tool_call(call_id: str, name: str, arguments: dict) -> list:
    raw = json.dumps(arguments)
    return [
        ToolCallStart(id=call_id, name=name),
        ToolCallArgumentsDelta(raw[:5]),
        ToolCallArgumentsDelta(raw[5:]),
        Done(finish_reason="tool_calls"),
    ]


class CounterTool:
    name = "counter"
    description = "Counts calls"
    parameters = {"type": "object", "properties": {}}
    risk_level = RiskLevel.LOW

    def __init__(self):
        self.calls = 0

    async def execute(self, arguments):
        self.calls += 1
        return {"calls": self.calls}


def _agent(llm, registry=None, **settings) -> AgentLoop:
    return AgentLoop(
        llm=llm,
        registry=registry or ToolRegistry(),
        settings=AgentSettings(system_prompt="be brief", default_model="gpt-4o-mini", **settings),
    )


def _session() -> Session:
    return Session(channel_id="webchat", sender_id="u1")


async def test_simple_reply_records_history_and_usage():
    session = _session()
    agent = _agent(ScriptedLLM([text("Hi there!", prompt_tokens=7)]))

    reply = await agent.run(session, "hello")

    assert reply == "Hi there!"
    assert [m.role for m in session.history] == ["system", "user", "assistant"]
    assert session.history[0].content == "be brief"
    assert session.usage_totals.prompt_tokens == 7
    assert session.last_assistant_message_id is not None


async def test_tool_loop_feeds_observation_back():
    tool = CounterTool()
    registry = ToolRegistry()
    registry.register(tool)
    llm = ScriptedLLM([tool_call("c1", "counter", {}), text("counted")])

    session = _session()
    reply = await _agent(llm, registry).run(session, "count please")

    assert reply == "counted"
    assert tool.calls == 1
    tool_msg = session.history[-2]
    assert tool_msg.role == "tool"
    assert tool_msg.tool_call_id == "c1"
    assert json.loads(tool_msg.content) == {"calls": 1}


async def test_several_calls_in_one_turn_are_answered_in_order():
    tool = CounterTool()
    registry = ToolRegistry()
    registry.register(tool)
    two_calls = [
        ToolCallStart(id="c1", name="counter"),
        ToolCallArgumentsDelta("{}"),
        ToolCallStart(id="c2", name="counter"),
        ToolCallArgumentsDelta("{}"),
        Done(finish_reason="tool_calls"),
    ]
    llm = ScriptedLLM([two_calls, text("counted twice")])

    session = _session()
    reply = await _agent(llm, registry).run(session, "count twice")

    assert reply == "counted twice"
    roles = [m.role for m in session.history]
    assert roles == ["system", "user", "assistant", "tool", "tool", "assistant"]
    assert [c.id for c in session.history[2].tool_calls] == ["c1", "c2"]
    assert [m.tool_call_id for m in session.history[3:5]] == ["c1", "c2"]
    assert [json.loads(m.content) for m in session.history[3:5]] == [{"calls": 1}, {"calls": 2}]


async def test_tool_call_traces_follow_verbose_flag():
    notes: list[str] = []

    async def notify(note: str) -> None:
        notes.append(note)

    registry = ToolRegistry()
    registry.register(CounterTool())
    session = _session()

    llm = ScriptedLLM([tool_call("c1", "counter", {}), text("quiet")])
    await _agent(llm, registry).run(session, "count", notify)
    assert notes == []

    session.show_tool_calls = True
    llm = ScriptedLLM([tool_call("c2", "counter", {}), text("loud")])
    await _agent(llm, registry).run(session, "count", notify)
    assert notes == ["tool call: counter {}", 'tool result: counter {"calls": 2}']
    assert session.history[-3].tool_calls[0].arguments == "{}"


async def test_traversal_attempt_becomes_unauthorized_observation(tmp_path):
    registry = ToolRegistry()
    registry.register(FilesystemTool(root=tmp_path))
    llm = ScriptedLLM(
        [
            tool_call("c1", "filesystem", {"action": "read_file", "path": "../etc/passwd"}),
            text("I cannot read that file."),
        ]
    )
    session = _session()

    reply = await _agent(llm, registry).run(session, "show me /etc/passwd")

    assert reply == "I cannot read that file."
    observation = json.loads(session.history[-2].content)
    assert observation["kind"] == "unauthorized"
    assert observation["error"].startswith("unauthorized:")
    # the second LLM call saw the observation
    assert llm.prompts[1][-1].role == "tool"


async def test_iteration_limit_appends_notice():
    registry = ToolRegistry()
    registry.register(CounterTool())
    llm = ScriptedLLM([tool_call(f"c{i}", "counter", {}) for i in range(2)])

    session = _session()
    reply = await _agent(llm, registry, max_iterations=2).run(session, "loop")

    assert reply == TRUNCATION_NOTICE
    assert session.history[-1] == ChatMessage(role="assistant", content=TRUNCATION_NOTICE)


async def test_llm_failure_rolls_back_turn():
    session = _session()
    agent = _agent(ScriptedLLM([text("first")]))
    await agent.run(session, "one")
    before = list(session.history)

    agent = _agent(ScriptedLLM([InvalidInputError("bad request")]))
    reply = await agent.run(session, "two")

    assert reply == APOLOGY
    assert session.history == before


async def test_override_falls_back_to_default_on_retryable_error():
    session = _session()
    session.model_override = "claude-3-5-sonnet-latest"
    llm = ScriptedLLM([HttpError("upstream 503", status_code=503), text("from default")])

    reply = await _agent(llm).run(session, "hi")

    assert reply == "from default"
    assert llm.models == ["claude-3-5-sonnet-latest", "gpt-4o-mini"]


async def test_strict_pinning_never_falls_back():
    session = _session()
    session.model_override = "claude-3-5-sonnet-latest"
    session.model_pinning = ModelPinning.STRICT
    llm = ScriptedLLM([HttpError("upstream 503", status_code=503), text("unused")])

    reply = await _agent(llm).run(session, "hi")

    assert reply == APOLOGY
    assert llm.models == ["claude-3-5-sonnet-latest"]


async def test_partial_text_survives_stream_failure():
    class Interrupted(ScriptedLLM):
        async def chat_stream(self, messages, tools, *, model):
            yield ContentDelta("partial ")
            yield ContentDelta("answer")
            raise HttpError("connection reset")

    reply = await _agent(Interrupted([])).run(_session(), "hi")
    assert reply == "partial answer"


async def test_thinking_is_sent_only_when_enabled():
    notes: list[str] = []

    async def notify(note: str) -> None:
        notes.append(note)

    chunks = [ReasoningDelta("pondering"), ContentDelta("done"), Done()]
    session = _session()
    await _agent(ScriptedLLM([chunks])).run(session, "q", notify)
    assert notes == []

    session.show_thinking = True
    await _agent(ScriptedLLM([chunks])).run(session, "q", notify)
    assert notes == ["thinking: pondering"]


def test_build_prompt_keeps_minimum_recent_messages():
    agent = _agent(ScriptedLLM([]), max_prompt_tokens=10, min_recent_messages=2)
    history = [ChatMessage(role="system", content="sys")] + [
        ChatMessage(role="user", content="x" * 400) for _ in range(5)
    ]
    prompt = agent.build_prompt(history)
    assert prompt[0].role == "system"
    assert len(prompt) == 3


def test_build_prompt_truncates_long_tool_output():
    agent = _agent(ScriptedLLM([]), max_tool_chars=10)
    history = [
        ChatMessage(role="system", content="sys"),
        ChatMessage(role="tool", content="a" * 25, tool_call_id="c1"),
    ]
    prompt = agent.build_prompt(history)
    assert prompt[1].content == "a" * 10 + "\n...[tool output truncated: dropped 15 chars]"
    # history itself is untouched
    assert history[1].content == "a" * 25


@pytest.mark.parametrize("existing", [True, False])
async def test_system_prompt_is_first_message(existing):
    session = _session()
    if existing:
        session.history.append(ChatMessage(role="system", content="stale"))
    await _agent(ScriptedLLM([text("ok")])).run(session, "hi")
    assert session.history[0] == ChatMessage(role="system", content="be brief")
    assert sum(m.role == "system" for m in session.history) == 1
